import logging
from typing import Any, Dict, List, Optional

from ..client import K8sClient, is_not_found, normalize_namespace
from ..formatters.mermaid import BR, Direction, MessageStyle, Sequence, Shape
from ..formatters.report import Report, format_labels
from ..formatters.topology_graph import TopologyGraph
from ..health import endpoint_verdict, pod_health_verdict
from ..models import EndpointHealth, HealthVerdict, ResourceRef
from ..topology import (
    find_ingress_for_host_path,
    format_service_ports,
    get_pods_for_service,
    get_service_endpoint_health,
    ingress_class_name,
    parse_agic_annotations,
    tls_secret_for_host,
)
from .common import (
    POD_TABLE_HEADERS,
    check_pod_health,
    name_of,
    namespace_of,
    pod_row,
    report_container_usage,
    selector_of,
    warning_events,
)

logger = logging.getLogger(__name__)


def _short(name: str, limit: int) -> str:
    return name if len(name) <= limit else name[:limit] + "..."


async def diagnose_request_path(
    client: K8sClient, hostname: str, path: str = "/", namespace: str = ""
) -> str:
    """Trace hostname+path through Ingress, Service, Endpoints and Pods."""
    path = path or "/"
    namespace = normalize_namespace(namespace)
    report = Report(f"Request Path: https://{hostname}{path}")
    graph = TopologyGraph(Direction.TB)

    # [1] INGRESS
    match = await find_ingress_for_host_path(client, namespace, hostname, path)
    if match is None:
        report.critical(f"No Ingress found for {hostname}{path}", inline=True, indent=0)
        report.line(
            "Searched all namespaces for matching Ingress host+path rules."
            if not namespace
            else f"Searched namespace '{namespace}' for matching Ingress host+path rules.",
            2,
        )
        report.suggest(f"Create an Ingress resource with host: {hostname} and path: {path}")
        report.suggest("Use list_ingresses or analyze_all_ingresses to see existing Ingress resources")
        return report.render()

    ingress = match.ingress
    ing_name = name_of(ingress)
    ing_ns = namespace_of(ingress)
    ingress_class = ingress_class_name(ingress)
    agic = parse_agic_annotations(ingress)

    report.stage("[1] INGRESS")
    report.key_value("Name", f"{ing_ns}/{ing_name}", 4)
    report.key_value("Host", match.rule.get("host"), 4)
    report.key_value("Path", match.path.get("path") or "/", 4)
    report.key_value("Path Type", match.path_type, 4)
    if ingress_class != "<none>":
        report.key_value("Ingress Class", ingress_class, 4)
    if agic:
        report.line("AGIC Annotations:", 4)
        for key, value in agic:
            report.line(f"{key}: {value}", 6)

    ingress_verdict = HealthVerdict.HEALTHY
    tls = tls_secret_for_host(ingress, hostname)
    if tls is not None:
        report.key_value("TLS", tls.get("secretName") or "<no secret>", 4)
    else:
        report.warning(
            "No TLS configured for this host",
            subject=ResourceRef.from_resource("Ingress", ingress),
            action=f"Configure TLS for {hostname}",
            inline=True,
            indent=4,
        )
        ingress_verdict = HealthVerdict.DEGRADED

    events = await warning_events(client, report, ing_ns, ing_name, "ingress")
    if events:
        report.warning(f"{len(events)} warning events on Ingress", inline=True, indent=4)
        for event in events:
            report.line(f"- {event.get('reason')}: {event.get('message')}", 6)
        ingress_verdict = HealthVerdict.DEGRADED

    graph.add_node("internet", "Internet", Shape.CIRCLE)
    graph.add_node(
        "agw",
        f"Ingress: {ing_name}{BR}{match.rule.get('host')}  Path: {match.path.get('path') or '/'}",
        Shape.TRAPEZOID_ALT,
        verdict=ingress_verdict,
    )
    graph.add_edge("internet", "agw", "HTTPS" if tls is not None else "HTTP")

    # [2] SERVICE
    svc_name, svc_port = match.backend_service
    if not svc_name:
        report.critical("No backend service configured in Ingress path", inline=True, indent=4)
        report.suggest(f"Add a backend service to path '{match.path.get('path') or '/'}' of Ingress '{ing_name}'")
        return report.render()

    report.stage("[2] SERVICE")
    try:
        service = await client.get_service(ing_ns, svc_name)
    except Exception as e:
        message = f"Backend service '{svc_name}' not found in namespace '{ing_ns}'"
        if not is_not_found(e):
            message = f"Could not get backend service '{svc_name}' in namespace '{ing_ns}': {e}"
        report.critical(
            message,
            subject=ResourceRef("Service", svc_name, ing_ns),
            action=f"Create service '{svc_name}' in namespace '{ing_ns}'",
            inline=True,
            indent=4,
        )
        graph.add_node("svc", f"Service: {svc_name}{BR}(missing)", Shape.RECT, verdict=HealthVerdict.CRITICAL)
        graph.add_edge("agw", "svc", svc_port)
        report.diagram("TOPOLOGY", graph.render_block())
        return report.render()

    spec = service.get("spec") or {}
    selector = selector_of(service)
    report.key_value("Name", svc_name, 4)
    report.key_value("Type", spec.get("type") or "ClusterIP", 4)
    report.key_value("ClusterIP", spec.get("clusterIP") or "<none>", 4)
    report.key_value("Port", f"{svc_port} → ports: {format_service_ports(service)}", 4)
    report.key_value("Selector", format_labels(selector), 4)

    svc_events = await warning_events(client, report, ing_ns, svc_name, "service")
    if svc_events:
        report.warning(f"{len(svc_events)} warning events on Service", inline=True, indent=4)

    # [3] ENDPOINTS / PODS
    report.stage("[3] ENDPOINTS")
    health: Optional[EndpointHealth] = None
    try:
        health = await get_service_endpoint_health(client, ing_ns, svc_name)
    except Exception as e:
        report.critical(f"Could not get endpoints: {e}", inline=True, indent=4)

    if health is not None:
        report.line(
            f"Ready: {health.ready_count}/{health.total_endpoints} "
            f"({health.ready_count} ready, {health.not_ready_count} not ready)",
            4,
        )
        if health.total_endpoints == 0:
            report.critical(
                "Service has 0 endpoints - no pods match the selector",
                subject=health.service,
                action=f"Check that pods with labels {format_labels(selector)} exist in namespace {ing_ns}",
                inline=True,
                indent=4,
            )
        elif health.ready_count == 0:
            report.critical(
                f"Service has no ready endpoints ({health.ready_count} ready, "
                f"{health.not_ready_count} not ready) - requests will fail with 502/503",
                subject=health.service,
                action=f"Investigate why pods behind '{svc_name}' are not passing readiness checks",
                inline=True,
                indent=4,
            )
        elif health.not_ready_count > 0:
            report.warning(
                f"{health.not_ready_count} endpoint(s) not ready "
                f"({health.ready_count} ready, {health.not_ready_count} not ready)",
                subject=health.service,
                inline=True,
                indent=4,
            )
        for addr in health.not_ready_addresses:
            report.line(f"- {addr.pod_name or '<no pod>'} ({addr.ip})", 6)

    pods: List[Dict[str, Any]] = []
    if not selector:
        report.line("PODS: N/A — no selector", 4)
    else:
        try:
            pods = await get_pods_for_service(client, service)
        except Exception as e:
            report.unavailable("backing pods", e, 4)

    if pods:
        report.line("")
        report.line("PODS:", 4)
        report.table(POD_TABLE_HEADERS, [pod_row(p) for p in pods], indent=4)
        for pod in pods:
            check_pod_health(report, pod, indent=4)

    # [4] RESOURCE USAGE
    report.stage("[4] RESOURCE USAGE")
    metrics = await client.get_pod_metrics(ing_ns)
    if not metrics.available:
        report.line("(metrics-server not available)", 4)
    elif pods:
        report_container_usage(report, pods, metrics, indent=4)
    else:
        report.line("No backing pods to report metrics for", 4)

    report.section("Summary")
    if report.issue_count == 0:
        report.line("Request path appears healthy. All layers operational.", 2)
    else:
        report.line(f"{report.issue_count} issue(s) across the request path.", 2)

    svc_verdict = endpoint_verdict(health)
    graph.add_node(
        "svc",
        f"Service: {svc_name}{BR}port: {svc_port}"
        + (f"{BR}{health.ready_count} ready / {health.not_ready_count} not ready" if health else ""),
        Shape.RECT,
        verdict=svc_verdict,
    )
    graph.add_edge("agw", "svc", svc_port)
    for pod in pods:
        pod_id = graph.add_node(f"pod_{name_of(pod)}", _short(name_of(pod), 30), Shape.ROUND, verdict=pod_health_verdict(pod))
        graph.add_edge("svc", pod_id)

    report.diagram("TOPOLOGY", graph.render_block())
    report.diagram("REQUEST FLOW", _request_flow(ing_name, svc_name, svc_port, path, tls is not None, agic, health, pods))

    logger.info(f"Request path diagnosis for {hostname}{path}: {report.issue_count} issue(s)")
    return report.render()


def _request_flow(
    ing_name: str,
    svc_name: str,
    svc_port: str,
    path: str,
    has_tls: bool,
    agic: List,
    health: Optional[EndpointHealth],
    pods: List[Dict[str, Any]],
) -> str:
    seq = Sequence()
    seq.add_participant("client", "Client")
    seq.add_participant("ing", f"Ingress: {ing_name}")
    seq.add_participant("svc", f"Service: {svc_name}")

    ready_pods = [
        addr.pod_name for addr in (health.ready_addresses if health else []) if addr.pod_name
    ]
    target_pod = ready_pods[0] if ready_pods else (name_of(pods[0]) if pods else "")
    if target_pod:
        seq.add_participant("pod", f"Pod: {_short(target_pod, 25)}")

    seq.add_message("client", "ing", f"{'HTTPS' if has_tls else 'HTTP'} GET {path}")

    notes = ["Route matching"]
    if has_tls:
        notes.append("TLS termination")
    for key, value in agic:
        if key == "request-timeout":
            notes.append(f"Timeout: {value}s")
        elif key == "backend-protocol":
            notes.append(f"Backend: {value}")
    seq.add_note("ing", BR.join(notes))

    seq.add_message("ing", "svc", f"Forward to {svc_port}")
    if health is not None:
        seq.add_note("svc", f"{health.ready_count}/{health.total_endpoints} endpoints ready")

    if health is not None and health.ready_count == 0:
        seq.add_message("svc", "ing", "NO ENDPOINTS", MessageStyle.DOTTED)
        seq.add_note("ing", "502/503 - no backends")
        seq.add_message("ing", "client", "502/503", MessageStyle.DOTTED)
    elif target_pod:
        seq.add_message("svc", "pod", "Forward to pod")
        seq.add_message("pod", "svc", "Response", MessageStyle.DOTTED)
        seq.add_message("svc", "ing", "Response", MessageStyle.DOTTED)
        seq.add_message("ing", "client", "Response", MessageStyle.DOTTED)

    return seq.render_block()
