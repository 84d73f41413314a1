import logging
import re
from collections import Counter
from typing import Any, Dict, List, Optional

from ..client import K8sClient, is_not_found, selector_string
from ..formatters.mermaid import BR, Direction, EdgeStyle, Shape
from ..formatters.report import Report, format_age, format_labels, truncate_name
from ..formatters.topology_graph import TopologyGraph
from ..health import endpoint_verdict, is_pod_healthy, pod_health_verdict, pod_phase_reason
from ..models import EndpointHealth, ErrorPatternCount, HealthVerdict, ResourceRef
from ..topology import (
    find_ingresses_for_service,
    format_service_ports,
    get_pods_for_service,
    get_service_endpoint_health,
    label_selector_matches,
    policy_selects_service,
)
from .common import (
    POD_TABLE_HEADERS,
    labels_of,
    name_of,
    pod_row,
    report_container_usage,
    selector_of,
)

logger = logging.getLogger(__name__)

DEFAULT_LOG_PATTERN = r"(?i)(error|exception|fatal|panic|timeout|refused|failed|crash|oom)"
DEFAULT_LOG_TAIL_LINES = 200
MAX_SAMPLES_PER_POD = 5
MAX_SAMPLE_LENGTH = 200
MAX_SERVICE_EVENTS = 10


async def _lookup_service(
    client: K8sClient, report: Report, namespace: str, service_name: str
) -> Optional[Dict[str, Any]]:
    try:
        return await client.get_service(namespace, service_name)
    except Exception as e:
        if is_not_found(e):
            message = f"Service '{namespace}/{service_name}' not found"
        else:
            message = f"Could not get service '{namespace}/{service_name}': {e}"
        report.critical(message, subject=ResourceRef("Service", service_name, namespace), inline=True)
        report.suggest("Verify the service name and namespace")
        report.suggest("Use map_service_topology or list_endpoint_health to see available services")
        return None


def _report_backing_pods(report: Report, pods: List[Dict[str, Any]], svc_ref: ResourceRef) -> None:
    if not pods:
        return
    report.table(POD_TABLE_HEADERS, [pod_row(p) for p in pods])
    unhealthy = [p for p in pods if not is_pod_healthy(p)]
    if unhealthy:
        report.critical(
            f"{len(unhealthy)}/{len(pods)} pods are unhealthy",
            subject=svc_ref,
            action=f"Diagnose pod '{name_of(unhealthy[0])}' with the diagnose_pod tool",
            inline=True,
        )


async def diagnose_service(client: K8sClient, namespace: str, service_name: str) -> str:
    """Everything around one Service: endpoints, pods, usage, exposure, policies and events."""
    report = Report(f"Service Diagnosis: {service_name} (namespace: {namespace})")

    service = await _lookup_service(client, report, namespace, service_name)
    if service is None:
        return report.render()

    spec = service.get("spec") or {}
    selector = selector_of(service)

    report.section("Service Configuration")
    report.key_value("Type", spec.get("type") or "ClusterIP")
    report.key_value("ClusterIP", spec.get("clusterIP") or "<none>")
    report.key_value("Ports", format_service_ports(service))
    report.key_value("Selector", format_labels(selector))
    report.key_value("Session Affinity", spec.get("sessionAffinity") or "None")
    report.key_value("Age", format_age((service.get("metadata") or {}).get("creationTimestamp")))

    report.section("Endpoint Health")
    health: Optional[EndpointHealth] = None
    try:
        health = await get_service_endpoint_health(client, namespace, service_name)
    except Exception as e:
        report.critical(f"Could not get endpoints: {e}", subject=ResourceRef("Service", service_name, namespace), inline=True)

    if health is not None:
        report.line(
            f"Total: {health.total_endpoints}, Ready: {health.ready_count}, NotReady: {health.not_ready_count}", 2
        )
        if health.total_endpoints == 0:
            report.critical(
                "Service has 0 endpoints - no pods match the selector",
                subject=health.service,
                action=f"Check that pods with labels {format_labels(selector)} exist in namespace {namespace}",
                inline=True,
            )
        elif health.not_ready_count > 0:
            report.warning(f"{health.not_ready_count} endpoint(s) not ready", subject=health.service, inline=True)
        else:
            report.ok("All endpoints ready")

    report.section("Backing Pods")
    pods: List[Dict[str, Any]] = []
    if not selector:
        report.line("N/A — no selector", 2)
    else:
        try:
            pods = await get_pods_for_service(client, service)
        except Exception as e:
            report.unavailable("backing pods", e)
        else:
            if not pods:
                report.line(f"No pods match selector {format_labels(selector)}", 2)
            _report_backing_pods(report, pods, ResourceRef("Service", service_name, namespace))

    report.section("Resource Usage")
    metrics = await client.get_pod_metrics(namespace)
    if not metrics.available:
        report.line("(metrics-server not available)", 2)
    elif pods:
        report_container_usage(report, pods, metrics, indent=2)
    else:
        report.line("No backing pods to report metrics for", 2)

    report.section("Ingress Exposure")
    exposures = []
    try:
        ingresses = await client.list_ingresses(namespace)
    except Exception as e:
        report.unavailable("ingresses", e)
    else:
        exposures = find_ingresses_for_service(ingresses, namespace, service_name)
        for ingress, host, path in exposures:
            report.line(f"Ingress '{name_of(ingress)}': {host}{path}", 2)
        if not exposures:
            report.line("Not exposed via any Ingress", 2)

    report.section("Network Policies")
    applied: List[str] = []
    try:
        policies = await client.list_network_policies(namespace)
    except Exception as e:
        report.unavailable("network policies", e)
    else:
        for policy in policies:
            pod_selector = (policy.get("spec") or {}).get("podSelector") or {}
            if policy_selects_service(pod_selector.get("matchLabels"), selector):
                applied.append(name_of(policy))
                report.line(f"Policy '{name_of(policy)}' applies to this service's pods", 2)
        if not policies:
            report.line("No network policies in namespace (all traffic allowed)", 2)
        elif not applied:
            report.line("No network policies target this service's pods (all traffic allowed)", 2)

    report.section("Recent Events")
    try:
        events = await client.get_events_for_object(namespace, service_name)
    except Exception as e:
        report.unavailable("events", e)
    else:
        if not events:
            report.line("No recent events", 2)
        for event in events[:MAX_SERVICE_EVENTS]:
            text = f"{event.get('reason')}: {event.get('message')}"
            if (event.get("count") or 0) > 1:
                text += f" (x{event['count']})"
            if event.get("type") == "Warning":
                report.warning(text, subject=ResourceRef("Service", service_name, namespace), inline=True)
            else:
                report.line(text, 2)

    report.section("Assessment")
    report.line(report.verdict("Service appears healthy. All endpoints ready, pods running."), 2)

    graph = TopologyGraph(Direction.LR)
    svc_id = graph.add_node(
        f"svc_{service_name}",
        f"Service: {service_name}{BR}{format_service_ports(service)}",
        Shape.RECT,
        verdict=endpoint_verdict(health),
    )
    for ingress, host, path in exposures:
        ing_id = graph.add_node(f"ing_{name_of(ingress)}", f"Ingress: {name_of(ingress)}{BR}{host}", Shape.TRAPEZOID_ALT, style="info")
        graph.add_edge(ing_id, svc_id, path)
    for pod in pods:
        pod_id = graph.add_node(f"pod_{name_of(pod)}", truncate_name(name_of(pod), 27), Shape.ROUND, verdict=pod_health_verdict(pod))
        graph.add_edge(svc_id, pod_id)
    for policy_name in applied:
        np_id = graph.add_node(f"np_{policy_name}", f"NetPol: {policy_name}", Shape.DIAMOND, style="warning")
        graph.add_edge(np_id, svc_id, "restricts", EdgeStyle.DOTTED)
    report.diagram("SERVICE CONTEXT", graph.render_block())

    logger.info(f"Service diagnosis for {namespace}/{service_name}: {report.issue_count} issue(s)")
    return report.render()


def _target_port(service_port: Dict[str, Any]) -> Any:
    target = service_port.get("targetPort")
    if target in (None, 0, ""):
        return service_port.get("port")
    return target


async def analyze_service_connectivity(client: K8sClient, namespace: str, service_name: str) -> str:
    """Six ordered checks on why a Service might be unreachable."""
    if not namespace or not service_name:
        raise ValueError("namespace and service_name are required")

    report = Report(f"Service Connectivity Analysis: {service_name} (namespace: {namespace})")
    svc_ref = ResourceRef("Service", service_name, namespace)

    report.section("Check 1: Service Exists")
    service = await _lookup_service(client, report, namespace, service_name)
    if service is None:
        return report.render()

    spec = service.get("spec") or {}
    selector = selector_of(service)
    report.key_value("Type", spec.get("type") or "ClusterIP")
    report.key_value("Cluster IP", spec.get("clusterIP") or "<none>")
    report.key_value("Selector", format_labels(selector))
    report.key_value("Ports", format_service_ports(service))
    report.ok("Service exists")

    report.section("Check 2: Selector Matches Pods")
    pods: List[Dict[str, Any]] = []
    if not selector:
        report.info("Service has no selector (headless/ExternalName)", subject=svc_ref, inline=True)
    else:
        try:
            pods = await get_pods_for_service(client, service)
        except Exception as e:
            report.warning(f"Could not list pods matching selector: {e}", subject=svc_ref, inline=True)
        else:
            if not pods:
                report.critical(
                    f"No pods match selector {format_labels(selector)} - service cannot route traffic",
                    subject=svc_ref,
                    action=f"Check that pods with labels {format_labels(selector)} exist in namespace {namespace}",
                    inline=True,
                )
            else:
                healthy = sum(1 for p in pods if is_pod_healthy(p))
                report.line(
                    f"{len(pods)} pods match selector ({healthy} healthy, {len(pods) - healthy} unhealthy)", 2
                )
                if healthy == 0:
                    report.critical("All matching pods are unhealthy", subject=svc_ref, inline=True)
                elif healthy < len(pods):
                    report.warning(
                        f"{len(pods) - healthy} of {len(pods)} matching pods are unhealthy", subject=svc_ref, inline=True
                    )
                else:
                    report.ok("All matching pods are healthy")

    report.section("Check 3: Endpoints Ready")
    health: Optional[EndpointHealth] = None
    try:
        health = await get_service_endpoint_health(client, namespace, service_name)
    except Exception as e:
        report.warning(f"Could not check endpoints: {e}", subject=svc_ref, inline=True)
    if health is not None:
        report.key_value("Total Endpoints", health.total_endpoints)
        report.key_value("Ready", health.ready_count)
        report.key_value("Not Ready", health.not_ready_count)
        if health.total_endpoints == 0 and selector:
            report.critical("No endpoints - service has no backends to route to", subject=svc_ref, inline=True)
        elif health.ready_count == 0 and health.total_endpoints > 0:
            report.critical(
                "All endpoints are not-ready - service is effectively down",
                subject=svc_ref,
                action=f"Investigate why pods behind '{service_name}' are not passing readiness checks",
                inline=True,
            )
        elif health.not_ready_count > 0:
            report.warning(
                f"{health.not_ready_count} of {health.total_endpoints} endpoints not ready", subject=svc_ref, inline=True
            )
        elif health.ready_count > 0:
            report.ok(f"All {health.ready_count} endpoints are ready")

    report.section("Check 4: Port Mapping Validation")
    if pods:
        numbers = set()
        names = set()
        for pod in pods:
            for container in (pod.get("spec") or {}).get("containers") or []:
                for port in container.get("ports") or []:
                    numbers.add(port.get("containerPort"))
                    if port.get("name"):
                        names.add(port["name"])

        for svc_port in spec.get("ports") or []:
            target = _target_port(svc_port)
            protocol = svc_port.get("protocol") or "TCP"
            declared = target in names if isinstance(target, str) else target in numbers
            if (numbers or names) and not declared:
                report.warning(
                    f"Service port {svc_port.get('port')}/{protocol} targets port {target}, "
                    f"but no container declares this port",
                    subject=svc_ref,
                    action=f"Align targetPort {target} of service '{service_name}' with a declared containerPort",
                    inline=True,
                )
            else:
                report.line(f"Port {svc_port.get('port')}/{protocol} -> target {target}: OK", 2)
    else:
        report.line("Skipped - no matched pods to validate against.", 2)

    report.section("Check 5: Network Policies")
    restricting: List[Dict[str, Any]] = []
    try:
        policies = await client.list_network_policies(namespace)
    except Exception as e:
        report.unavailable("network policies", e)
    else:
        if not policies:
            report.info("No network policies in namespace - all traffic allowed by default", inline=True)
        for policy in policies:
            policy_spec = policy.get("spec") or {}
            matched = next(
                (p for p in pods if label_selector_matches(policy_spec.get("podSelector"), labels_of(p))), None
            )
            if matched is None:
                continue
            restricting.append({"name": name_of(policy), "pod": name_of(matched)})
            report.line(f"Policy '{name_of(policy)}' affects service pods", 2)
            if "Ingress" in (policy_spec.get("policyTypes") or []) and not policy_spec.get("ingress"):
                report.warning(
                    f"Policy '{name_of(policy)}' denies all ingress - may block traffic to this service",
                    subject=ResourceRef.from_resource("NetworkPolicy", policy),
                    inline=True,
                    indent=4,
                )
        if policies and not restricting:
            report.info("No network policies target this service's pods", inline=True)

    report.section("Check 6: Ingress Exposure")
    exposures = []
    try:
        ingresses = await client.list_ingresses(namespace)
    except Exception as e:
        report.unavailable("ingresses", e)
    else:
        exposures = find_ingresses_for_service(ingresses, namespace, service_name)
        for ingress, host, path in exposures:
            report.line(f"Ingress '{name_of(ingress)}' exposes this service via {host}{path}", 2)
        if not exposures:
            report.info("Service is not exposed via any Ingress (internal only)", inline=True)

    report.section("Overall Assessment")
    report.line(report.verdict("Service connectivity looks healthy. No issues found."), 2)

    graph = TopologyGraph(Direction.TB)
    for ingress, host, _ in exposures:
        graph.add_node(f"ing_{name_of(ingress)}", f"Ingress: {name_of(ingress)}{BR}{host}", Shape.TRAPEZOID_ALT, style="info")
    svc_id = graph.add_node(
        f"svc_{service_name}",
        f"Service: {service_name}{BR}{format_service_ports(service)}",
        Shape.ROUND,
        verdict=_service_verdict(health, selector),
    )
    for ingress, _, path in exposures:
        graph.add_edge(f"ing_{name_of(ingress)}", svc_id, path)
    for pod in pods:
        pod_id = graph.add_node(f"pod_{name_of(pod)}", f"{name_of(pod)}{BR}{pod_phase_reason(pod)}", Shape.RECT,
                                verdict=HealthVerdict.HEALTHY if is_pod_healthy(pod) else HealthVerdict.CRITICAL)
        graph.add_edge(svc_id, pod_id)
    for item in restricting:
        np_id = graph.add_node(f"np_{item['name']}", f"NetPol: {item['name']}", Shape.DIAMOND, style="warning")
        graph.add_edge(np_id, f"pod_{item['pod']}", "restricts", EdgeStyle.DOTTED)
    report.diagram("CONNECTIVITY DIAGRAM", graph.render_block())

    logger.info(f"Connectivity analysis for {namespace}/{service_name}: {report.issue_count} issue(s)")
    return report.render()


def _service_verdict(health: Optional[EndpointHealth], selector: Dict[str, str]) -> Optional[HealthVerdict]:
    if health is None:
        return None
    if health.total_endpoints == 0 and selector:
        return HealthVerdict.CRITICAL
    if health.not_ready_count > 0:
        return HealthVerdict.DEGRADED
    return HealthVerdict.HEALTHY


async def analyze_service_logs(
    client: K8sClient,
    namespace: str,
    deployment_name: str,
    pattern: str = "",
    tail_lines: int = DEFAULT_LOG_TAIL_LINES,
) -> str:
    """Scan the logs of a deployment's pods for an error regex.

    Counts matches per matched term and per pod, and keeps the first few matching
    lines of each pod as samples.
    """
    pattern = pattern or DEFAULT_LOG_PATTERN
    try:
        regex = re.compile(pattern)
    except re.error as e:
        raise ValueError(f"Invalid pattern: {e}") from e
    if tail_lines <= 0:
        tail_lines = DEFAULT_LOG_TAIL_LINES

    report = Report(f"Service Log Analysis: {deployment_name} (namespace: {namespace})")
    try:
        deployment = await client.get_deployment(namespace, deployment_name)
    except Exception as e:
        if not is_not_found(e):
            raise
        report.critical(
            f"Deployment '{deployment_name}' not found in namespace '{namespace}'",
            subject=ResourceRef("Deployment", deployment_name, namespace),
            inline=True,
        )
        return report.render()

    label_selector = ((deployment.get("spec") or {}).get("selector")) or {}
    pods = await client.list_pods(namespace, label_selector=selector_string(label_selector.get("matchLabels")))
    pods = [p for p in pods if label_selector_matches(label_selector, labels_of(p))]

    report.key_value("Pattern", pattern, 0)
    report.line(f"Pods: {len(pods)}, Lines per pod: {tail_lines}")

    terms: Counter = Counter()
    per_pod: Dict[str, int] = {}
    samples: Dict[str, List[str]] = {}

    for pod in pods:
        pod_name = name_of(pod)
        for container in (pod.get("spec") or {}).get("containers") or []:
            c_name = container.get("name", "")
            try:
                logs = await client.get_pod_logs(namespace, pod_name, c_name, tail_lines=tail_lines)
            except Exception as e:
                report.unavailable(f"logs for {pod_name}/{c_name}", e, 0)
                continue
            for line in logs.splitlines():
                found = regex.search(line)
                if not found:
                    continue
                terms[found.group(0).lower()] += 1
                per_pod[pod_name] = per_pod.get(pod_name, 0) + 1
                pod_samples = samples.setdefault(pod_name, [])
                if len(pod_samples) < MAX_SAMPLES_PER_POD:
                    pod_samples.append(line if len(line) <= MAX_SAMPLE_LENGTH else line[:MAX_SAMPLE_LENGTH] + "...")

    total = sum(per_pod.values())
    if total == 0:
        report.line("")
        report.line("No matching log entries found.")
        return report.render(include_findings=False)

    report.section(f"Found {total} matching entries")
    breakdown = [ErrorPatternCount(term, count) for term, count in terms.most_common()]
    report.line("Error Type Breakdown:")
    for entry in breakdown:
        report.line(f"{entry.pattern:<20} {entry.count}", 2)

    report.line("")
    report.line("Per-Pod Breakdown:")
    for pod_name, count in per_pod.items():
        report.line(f"{pod_name:<40} {count} matches", 2)

    report.line("")
    report.line(f"Sample Matching Lines (first {MAX_SAMPLES_PER_POD} per pod):")
    for pod_name, lines in samples.items():
        for line in lines:
            report.line(f"[{pod_name}] {line}", 2)

    logger.info(f"Log analysis for {namespace}/{deployment_name}: {total} matching line(s)")
    return report.render(include_findings=False)
