"""Ingress tracing and auditing.

A single ingress is walked rule by rule down to its backend pods; the audit
checks every ingress of a namespace and then looks for host/path rules that
overlap across different ingresses.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..client import K8sClient, display_namespace, is_not_found, normalize_namespace
from ..formatters.mermaid import BR, Direction, Shape
from ..formatters.report import Report, format_age, truncate_name
from ..formatters.topology_graph import TopologyGraph
from ..health import (
    HIGH_RESTART_THRESHOLD,
    endpoint_verdict,
    is_pod_healthy,
    pod_container_summary,
    pod_health_verdict,
    pod_phase_reason,
)
from ..models import ResourceRef
from ..topology import (
    backend_service_ref,
    format_service_ports,
    get_pods_for_service,
    get_service_endpoint_health,
    ingress_class_name,
    parse_agic_annotations,
    paths_overlap,
    service_port_matches,
)
from .common import POD_TABLE_HEADERS, name_of, namespace_of, pod_ref, pod_row

logger = logging.getLogger(__name__)

DEFAULT_BACKEND_PATH = "(default)"


def ingress_paths(ingress: Dict[str, Any]) -> List[Tuple[str, Optional[Dict[str, Any]], Dict[str, Any]]]:
    """``(host, rule, path)`` for the default backend and every HTTP path, in declaration order.

    A rule without an ``http`` block yields ``(host, rule, {})``.
    """
    spec = ingress.get("spec") or {}
    entries = []
    if spec.get("defaultBackend"):
        entries.append(("*", None, {"path": DEFAULT_BACKEND_PATH, "backend": spec["defaultBackend"]}))
    for rule in spec.get("rules") or []:
        host = rule.get("host") or "*"
        if not rule.get("http"):
            entries.append((host, rule, {}))
            continue
        for ingress_path in rule["http"].get("paths") or []:
            entries.append((host, rule, ingress_path))
    return entries


async def _trace_backend(
    client: K8sClient,
    report: Report,
    graph: TopologyGraph,
    namespace: str,
    entry_node: str,
    edge_label: str,
    svc_name: str,
    svc_port: str,
) -> None:
    svc_ref = ResourceRef("Service", svc_name, namespace)
    report.key_value("Backend", f"{svc_name}:{svc_port or 'default'}", 6)
    svc_node = f"svc_{svc_name}"

    try:
        service = await client.get_service(namespace, svc_name)
    except Exception as e:
        if is_not_found(e):
            message = f"Backend service '{svc_name}' not found in namespace '{namespace}'"
        else:
            message = f"Could not get backend service '{svc_name}': {e}"
        report.critical(
            message,
            subject=svc_ref,
            action=f"Create service '{svc_name}' or fix the Ingress backend",
            inline=True,
            indent=6,
        )
        graph.add_node(svc_node, f"Service: {svc_name}{BR}MISSING", Shape.ROUND, style="critical")
        graph.add_edge(entry_node, svc_node, edge_label)
        return

    report.key_value("Service Ports", format_service_ports(service), 6)
    if not service_port_matches(service, svc_port):
        report.warning(
            f"Backend port '{svc_port}' does not match any port of service '{svc_name}'",
            subject=svc_ref,
            action=f"Align the Ingress backend port with the ports of service '{svc_name}'",
            inline=True,
            indent=6,
        )

    health = None
    try:
        health = await get_service_endpoint_health(client, namespace, svc_name)
    except Exception as e:
        report.unavailable(f"endpoints for service '{svc_name}'", e, 6)
    else:
        report.key_value("Endpoints", f"{health.ready_count} ready, {health.not_ready_count} not ready", 6)
        if health.total_endpoints == 0:
            report.critical(
                f"Service '{svc_name}' has 0 endpoints - this path will return 502/503",
                subject=svc_ref,
                inline=True,
                indent=6,
            )
        elif health.not_ready_count > 0:
            report.warning(
                f"Service '{svc_name}' has {health.ready_count}/{health.total_endpoints} ready endpoints",
                subject=svc_ref,
                inline=True,
                indent=6,
            )

    graph.add_node(
        svc_node,
        f"Service: {svc_name}{BR}{format_service_ports(service)}",
        Shape.ROUND,
        verdict=endpoint_verdict(health),
    )
    graph.add_edge(entry_node, svc_node, edge_label)

    try:
        pods = await get_pods_for_service(client, service)
    except Exception as e:
        report.unavailable(f"pods for service '{svc_name}'", e, 6)
        return
    if not pods:
        return

    report.table(POD_TABLE_HEADERS, [pod_row(p) for p in pods], indent=6)
    for pod in pods:
        ref = pod_ref(pod)
        if not is_pod_healthy(pod):
            report.warning(
                f"Backend pod '{name_of(pod)}' is unhealthy: {pod_phase_reason(pod)}", subject=ref, inline=True, indent=6
            )
        restarts = pod_container_summary(pod)[2]
        if restarts > HIGH_RESTART_THRESHOLD:
            report.warning(
                f"Backend pod '{name_of(pod)}' has high restart count: {restarts}", subject=ref, inline=True, indent=6
            )
        pod_node = graph.add_node(
            f"pod_{name_of(pod)}",
            f"{truncate_name(name_of(pod), 30)}{BR}{pod_phase_reason(pod)}",
            Shape.RECT,
            verdict=pod_health_verdict(pod),
        )
        graph.add_edge(svc_node, pod_node)


async def trace_ingress_to_backend(client: K8sClient, namespace: str, ingress_name: str) -> str:
    """Walk every rule and path of one Ingress down to its backend pods."""
    if not namespace or not ingress_name:
        raise ValueError("namespace and ingress_name are required")

    report = Report(f"Ingress Trace: {ingress_name} (namespace: {namespace})")
    try:
        ingress = await client.get_ingress(namespace, ingress_name)
    except Exception as e:
        if is_not_found(e):
            message = f"Ingress '{namespace}/{ingress_name}' not found"
        else:
            message = f"Could not get ingress '{namespace}/{ingress_name}': {e}"
        report.critical(message, subject=ResourceRef("Ingress", ingress_name, namespace), inline=True, indent=0)
        report.suggest("Use analyze_all_ingresses to list the ingresses of this namespace")
        return report.render()

    ing_ref = ResourceRef.from_resource("Ingress", ingress)
    report.section("Ingress")
    report.key_value("Class", ingress_class_name(ingress))
    report.key_value("Age", format_age((ingress.get("metadata") or {}).get("creationTimestamp")))
    tls_hosts = [h for tls in (ingress.get("spec") or {}).get("tls") or [] for h in tls.get("hosts") or []]
    report.key_value("TLS Hosts", ", ".join(tls_hosts) if tls_hosts else "<none>")
    agic = parse_agic_annotations(ingress)
    if agic:
        report.line("AGIC Annotations:", 2)
        for key, value in agic:
            report.line(f"{key}: {value}", 4)

    graph = TopologyGraph(Direction.LR)
    graph.add_node("internet", "Internet", Shape.CIRCLE)
    ing_node = graph.add_node("ing", f"Ingress: {ingress_name}", Shape.TRAPEZOID_ALT, style="info")
    graph.add_edge("internet", ing_node, "HTTPS" if tls_hosts else "HTTP")

    entries = ingress_paths(ingress)
    if not entries:
        report.critical("Ingress has no rules and no default backend", subject=ing_ref, inline=True)

    for host, rule, ingress_path in entries:
        report.section(f"Host: {host}")
        if rule is not None and not ingress_path:
            report.warning(f"Rule for host '{host}' has no HTTP paths defined", subject=ing_ref, inline=True)
            continue

        path = ingress_path.get("path") or "/"
        path_type = ingress_path.get("pathType") or "Prefix"
        report.line(f"Path: {path} (type: {path_type})" if rule is not None else f"Path: {path}", 4)
        if host != "*" and host not in tls_hosts:
            report.info(f"No TLS configured for host '{host}'", subject=ing_ref)

        svc_name, svc_port = backend_service_ref(ingress_path)
        if not svc_name:
            report.critical(f"Path '{path}' has no service backend configured", subject=ing_ref, inline=True, indent=6)
            continue
        await _trace_backend(client, report, graph, namespace, ing_node, f"{host}{path}", svc_name, svc_port)

    report.section("Assessment")
    report.line(report.verdict("All paths route to healthy backends."), 2)
    report.diagram("INGRESS TRACE", graph.render_block())

    logger.info(f"Ingress trace for {namespace}/{ingress_name}: {report.issue_count} issue(s)")
    return report.render()


async def _audit_backend(
    client: K8sClient, report: Report, namespace: str, svc_name: str, svc_port: str, ing_ref: ResourceRef
) -> None:
    try:
        service = await client.get_service(namespace, svc_name)
    except Exception as e:
        if is_not_found(e):
            report.critical(f"Backend service '{namespace}/{svc_name}' NOT FOUND", subject=ing_ref, inline=True, indent=6)
        else:
            report.unavailable(f"service '{svc_name}'", e, 6)
        return

    if not service_port_matches(service, svc_port):
        report.warning(f"Port '{svc_port}' not defined on service '{svc_name}'", subject=ing_ref, inline=True, indent=6)

    try:
        health = await get_service_endpoint_health(client, namespace, svc_name)
    except Exception as e:
        report.unavailable(f"endpoints for service '{svc_name}'", e, 6)
        return
    svc_ref = ResourceRef("Service", svc_name, namespace)
    if health.total_endpoints == 0:
        report.critical(
            f"Service '{namespace}/{svc_name}' has 0 endpoints - this path will return 502/503",
            subject=svc_ref,
            inline=True,
            indent=6,
        )
    elif health.not_ready_count > 0:
        report.warning(
            f"Service '{namespace}/{svc_name}' has {health.ready_count}/{health.total_endpoints} ready endpoints",
            subject=svc_ref,
            inline=True,
            indent=6,
        )
    else:
        report.line(f"Endpoints: {health.ready_count} ready", 6)


async def analyze_all_ingresses(client: K8sClient, namespace: str = "") -> str:
    namespace = normalize_namespace(namespace)
    report = Report(f"Ingress Audit (namespace: {display_namespace(namespace)})")

    ingresses = await client.list_ingresses(namespace)
    if not ingresses:
        report.line("No ingresses found.")
        return report.render(include_findings=False)

    # (namespace, host) -> [(ingress name, path)]
    host_paths: Dict[Tuple[str, str], List[Tuple[str, str]]] = {}

    for ingress in ingresses:
        ns = namespace_of(ingress)
        ing_ref = ResourceRef.from_resource("Ingress", ingress)
        report.section(f"Ingress: {ns}/{name_of(ingress)}")
        report.key_value("Class", ingress_class_name(ingress))
        report.key_value("Age", format_age((ingress.get("metadata") or {}).get("creationTimestamp")))
        agic = parse_agic_annotations(ingress)
        if agic:
            report.line(f"AGIC Annotations ({len(agic)}):", 2)
            for key, value in agic:
                report.line(f"{key}: {value}", 4)

        for host, rule, ingress_path in ingress_paths(ingress):
            if rule is not None and not ingress_path:
                report.line(f"Host: {host}", 2)
                report.warning(f"Rule for host '{host}' has no HTTP paths defined", subject=ing_ref, inline=True, indent=4)
                continue
            path = ingress_path.get("path") or "/"
            if rule is not None:
                host_paths.setdefault((ns, host), []).append((name_of(ingress), path))
            report.line(f"Host: {host}  Path: {path} (type: {ingress_path.get('pathType') or 'Prefix'})", 2)

            svc_name, svc_port = backend_service_ref(ingress_path)
            if not svc_name:
                report.critical(f"Path '{path}' has no service backend configured", subject=ing_ref, inline=True, indent=6)
                continue
            report.line(f"Backend: {svc_name}:{svc_port}", 6)
            await _audit_backend(client, report, ns, svc_name, svc_port, ing_ref)

        tls_entries = (ingress.get("spec") or {}).get("tls") or []
        if not tls_entries:
            report.info(f"Ingress '{name_of(ingress)}' has no TLS configured - traffic is unencrypted", subject=ing_ref)
        for tls in tls_entries:
            report.line(f"TLS Hosts: {', '.join(tls.get('hosts') or []) or '<none>'}", 2)
            if tls.get("secretName"):
                report.line(f"Secret: {tls['secretName']}", 4)
            else:
                report.warning(
                    f"Ingress '{name_of(ingress)}' TLS entry has no secret - may use the default certificate",
                    subject=ing_ref,
                    inline=True,
                    indent=4,
                )

    report.section("Host/Path Conflict Analysis")
    conflicts = 0
    for (ns, host), entries in host_paths.items():
        for i, (ing_a, path_a) in enumerate(entries):
            for ing_b, path_b in entries[i + 1:]:
                if ing_a == ing_b or not paths_overlap(path_a, path_b):
                    continue
                conflicts += 1
                report.warning(
                    f"Potential conflict: host '{host}' path '{path_a}' (ingress: {ing_a}) "
                    f"overlaps with path '{path_b}' (ingress: {ing_b})",
                    subject=ResourceRef("Ingress", ing_a, ns),
                    inline=True,
                )
    if conflicts == 0:
        report.line("No host/path conflicts detected.", 2)

    report.section("Audit Summary")
    report.key_value("Ingresses audited", len(ingresses))
    report.line(report.verdict("No issues found. All ingresses look healthy."), 2)

    logger.info(f"Ingress audit for {display_namespace(namespace)}: {report.issue_count} issue(s)")
    return report.render()
