import logging
from typing import Any, Dict, List, Optional

from ..client import K8sClient, display_namespace, normalize_namespace
from ..formatters.mermaid import BR, Direction, EdgeStyle, Shape
from ..formatters.report import Report, format_age, truncate_name
from ..formatters.topology_graph import TopologyGraph
from ..health import endpoint_verdict, pod_health_verdict, pod_phase_reason
from ..models import EndpointHealth, ResourceRef
from ..topology import (
    backend_service_ref,
    dependencies_from_env,
    format_service_ports,
    get_service_endpoint_health,
    ingress_backend_services,
    map_pods_to_services,
)
from .common import name_of, namespace_of, selector_of

logger = logging.getLogger(__name__)

SERVICE_TABLE_HEADERS = ["SERVICE", "TYPE", "CLUSTER-IP", "PORTS", "PODS", "READY-EP", "AGE"]
INGRESS_TABLE_HEADERS = ["INGRESS", "HOSTS", "PATHS", "BACKEND-SERVICES", "TLS"]
DEPENDENCY_TABLE_HEADERS = ["FROM", "TO", "CONFIDENCE", "SOURCE"]
ENDPOINT_TABLE_HEADERS = ["SERVICE", "NAMESPACE", "TYPE", "TOTAL-EP", "READY", "NOT-READY", "STATUS"]


def _ingress_summary(ingress: Dict[str, Any]) -> List[str]:
    hosts: List[str] = []
    paths: List[str] = []
    backends: List[str] = []
    for rule in (ingress.get("spec") or {}).get("rules") or []:
        if rule.get("host"):
            hosts.append(rule["host"])
        for ingress_path in (rule.get("http") or {}).get("paths") or []:
            paths.append(ingress_path.get("path") or "/")
            svc_name, _ = backend_service_ref(ingress_path)
            if svc_name and svc_name not in backends:
                backends.append(svc_name)
    return [
        name_of(ingress),
        ", ".join(hosts),
        ", ".join(paths),
        ", ".join(backends),
        "Yes" if (ingress.get("spec") or {}).get("tls") else "No",
    ]


async def map_service_topology(client: K8sClient, namespace: str) -> str:
    """Services, their pods, the ingresses in front of them and inferred service-to-service edges."""
    namespace = normalize_namespace(namespace)
    if not namespace:
        raise ValueError("map_service_topology requires a specific namespace, not 'all'")

    report = Report(f"Service Topology Map (namespace: {namespace})")

    services = await client.list_services(namespace)
    report.section("Services")
    if not services:
        report.line("No services found in this namespace.", 2)
        return report.render(include_findings=False)

    pods: List[Dict[str, Any]] = []
    try:
        pods = await client.list_pods(namespace)
    except Exception as e:
        report.unavailable("pods", e)
    svc_pods = map_pods_to_services(services, pods)

    health: Dict[str, Optional[EndpointHealth]] = {}
    rows = []
    for svc in services:
        name = name_of(svc)
        try:
            health[name] = await get_service_endpoint_health(client, namespace, name)
        except Exception as e:
            logger.warning(f"Could not fetch endpoints for {namespace}/{name}: {e}")
            health[name] = None
        ep = health[name]
        spec = svc.get("spec") or {}
        rows.append(
            [
                name,
                spec.get("type") or "ClusterIP",
                spec.get("clusterIP") or "<none>",
                format_service_ports(svc),
                len(svc_pods.get(name, [])),
                f"{ep.ready_count}/{ep.total_endpoints}" if ep is not None else "?",
                format_age((svc.get("metadata") or {}).get("creationTimestamp")),
            ]
        )
    report.table(SERVICE_TABLE_HEADERS, rows)
    report.line(f"{len(services)} services", 2)

    ingresses: List[Dict[str, Any]] = []
    try:
        ingresses = await client.list_ingresses(namespace)
    except Exception as e:
        report.warning(f"Could not list ingresses: {e}", inline=True)
    if ingresses:
        report.section("Ingresses")
        report.table(INGRESS_TABLE_HEADERS, [_ingress_summary(i) for i in ingresses])
        report.line(f"{len(ingresses)} ingresses", 2)

    service_names = {name_of(s) for s in services}
    missing_backends: List[str] = []
    for ingress in ingresses:
        for _, _, svc_name, _ in ingress_backend_services(ingress):
            if svc_name and svc_name not in service_names and svc_name not in missing_backends:
                missing_backends.append(svc_name)
                report.critical(
                    f"Ingress '{name_of(ingress)}' routes to service '{svc_name}' which does not exist",
                    subject=ResourceRef.from_resource("Ingress", ingress),
                )

    deps = dependencies_from_env(services, pods, namespace)
    if deps:
        report.section("Inferred Service Dependencies")
        report.table(
            DEPENDENCY_TABLE_HEADERS,
            [[d.from_service, d.to_service, d.confidence.value, d.source] for d in deps],
        )

    for svc in services:
        name = name_of(svc)
        ref = ResourceRef("Service", name, namespace)
        ep = health[name]
        if ep is not None and ep.total_endpoints == 0 and selector_of(svc):
            report.critical(f"Service '{name}' has 0 endpoints - no pods match its selector", subject=ref)
        elif ep is not None and ep.not_ready_count > 0:
            report.warning(
                f"Service '{name}' has {ep.not_ready_count} not-ready endpoints out of {ep.total_endpoints} total",
                subject=ref,
            )
        if not selector_of(svc) and (svc.get("spec") or {}).get("type") != "ExternalName":
            report.info(f"Service '{name}' has no selector (headless/external)", subject=ref)

    graph = TopologyGraph(Direction.TB)
    if ingresses:
        graph.add_node("INTERNET", "Internet", Shape.CIRCLE, style="info")
        ing_group = graph.add_group("ingresses", "Ingresses")
        for ingress in ingresses:
            hosts = _ingress_summary(ingress)[1]
            ing_id = graph.add_node(
                f"ing_{name_of(ingress)}", f"{name_of(ingress)}{BR}{hosts}", Shape.TRAPEZOID_ALT, group=ing_group
            )
            graph.add_edge("INTERNET", ing_id)

    svc_group = graph.add_group("svc_sub", f"Services ({namespace})")
    for svc in services:
        graph.add_node(
            f"svc_{name_of(svc)}",
            f"{name_of(svc)}{BR}{(svc.get('spec') or {}).get('type') or 'ClusterIP'}",
            Shape.ROUND,
            verdict=endpoint_verdict(health[name_of(svc)]),
            group=svc_group,
        )
    for svc_name in missing_backends:
        graph.add_node(f"svc_{svc_name}", f"{svc_name}{BR}MISSING", Shape.ROUND, style="critical", group=svc_group)

    for ingress in ingresses:
        for host, path, svc_name, _ in ingress_backend_services(ingress):
            if svc_name:
                graph.add_edge(f"ing_{name_of(ingress)}", f"svc_{svc_name}", f"{host}{path}")

    if svc_pods:
        pod_group = graph.add_group("pods_sub", "Pods")
        for svc_name, backing in svc_pods.items():
            for pod in backing:
                pod_id = graph.add_node(
                    f"pod_{name_of(pod)}",
                    f"{truncate_name(name_of(pod), 30)}{BR}{pod_phase_reason(pod)}",
                    Shape.RECT,
                    verdict=pod_health_verdict(pod),
                    group=pod_group,
                )
                graph.add_edge(f"svc_{svc_name}", pod_id)

    for dep in deps:
        graph.add_edge(f"svc_{dep.from_service}", f"svc_{dep.to_service}", dep.confidence.value, EdgeStyle.DOTTED)

    report.diagram("TOPOLOGY DIAGRAM", graph.render_block())
    logger.info(f"Service topology for {namespace}: {len(services)} services, {len(deps)} dependencies")
    return report.render()


def endpoint_status(service: Dict[str, Any], health: Optional[EndpointHealth]) -> str:
    """HEALTHY, EXTERNAL, NO-SELECTOR, DEAD, DEGRADED, or ERROR when endpoints could not be read."""
    if (service.get("spec") or {}).get("type") == "ExternalName":
        return "EXTERNAL"
    if health is None:
        return "ERROR"
    if health.total_endpoints == 0:
        return "DEAD" if selector_of(service) else "NO-SELECTOR"
    if health.not_ready_count > 0:
        return "DEGRADED"
    return "HEALTHY"


async def list_endpoint_health(client: K8sClient, namespace: str = "") -> str:
    namespace = normalize_namespace(namespace)
    report = Report(f"Endpoint Health Report (namespace: {display_namespace(namespace)})")

    services = await client.list_services(namespace)
    if not services:
        report.line("No services found.")
        return report.render(include_findings=False)

    counts = {"HEALTHY": 0, "DEGRADED": 0, "DEAD": 0}
    rows = []
    for svc in services:
        ns, name = namespace_of(svc), name_of(svc)
        ref = ResourceRef("Service", name, ns)
        svc_type = (svc.get("spec") or {}).get("type") or "ClusterIP"
        health: Optional[EndpointHealth] = None
        if svc_type != "ExternalName":
            try:
                health = await get_service_endpoint_health(client, ns, name)
            except Exception as e:
                logger.warning(f"Could not fetch endpoints for {ns}/{name}: {e}")

        status = endpoint_status(svc, health)
        if status in counts:
            counts[status] += 1
        if health is None:
            rows.append([name, ns, svc_type, "-", "-", "-", status])
            if status == "ERROR":
                report.warning(f"Could not check endpoint health for service '{ns}/{name}'", subject=ref)
            continue

        rows.append([name, ns, svc_type, health.total_endpoints, health.ready_count, health.not_ready_count, status])
        if status == "DEAD":
            report.critical(
                f"Service '{ns}/{name}' has 0 ready endpoints - all traffic will fail",
                subject=ref,
                action=f"Run diagnose_service on '{ns}/{name}'",
            )
        elif status == "DEGRADED":
            report.warning(
                f"Service '{ns}/{name}' has not-ready endpoints "
                f"({health.ready_count}/{health.total_endpoints} ready) - partial availability",
                subject=ref,
            )

    report.table(ENDPOINT_TABLE_HEADERS, rows, indent=0)
    report.line("")
    report.line(
        f"Summary: {counts['HEALTHY']} healthy, {counts['DEGRADED']} degraded, "
        f"{counts['DEAD']} dead out of {len(services)} services"
    )
    return report.render()
