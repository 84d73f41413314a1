import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from ..client import K8sClient
from ..formatters.mermaid import BR, Direction, Shape
from ..formatters.report import Report
from ..formatters.topology_graph import TopologyGraph
from ..health import (
    CLUSTER_UTILIZATION_WARNING_PERCENT,
    HIGH_RESTART_THRESHOLD,
    format_bytes,
    is_pod_healthy,
    node_health_verdict,
    node_pressure_conditions,
    node_status,
    parse_cpu,
    parse_memory,
    percent,
    pod_container_summary,
)
from ..models import ResourceRef
from ..topology import get_service_endpoint_health
from .common import name_of, namespace_of, recent_warnings, selector_of

logger = logging.getLogger(__name__)

SYSTEM_NAMESPACE = "kube-system"
MAX_DIAGRAM_INGRESSES = 5


def _report_nodes(report: Report, nodes: List[Dict[str, Any]]) -> None:
    ready = 0
    for node in nodes:
        status = node_status(node)
        ref = ResourceRef.from_resource("Node", node)
        if status == "Ready":
            ready += 1
        else:
            report.critical(f"Node '{name_of(node)}' is {status}", subject=ref, inline=True)
        for condition in node_pressure_conditions(node):
            report.warning(f"Node '{name_of(node)}' has {condition}", subject=ref, inline=True)
    report.line(f"{ready}/{len(nodes)} nodes ready", 2)


def _report_utilization(report: Report, nodes: List[Dict[str, Any]], metrics) -> None:
    cap_cpu = sum(parse_cpu(((n.get("status") or {}).get("capacity") or {}).get("cpu")) for n in nodes)
    cap_mem = sum(parse_memory(((n.get("status") or {}).get("capacity") or {}).get("memory")) for n in nodes)
    used_cpu = sum(u.cpu_millicores for u in metrics.usage.values())
    used_mem = sum(u.memory_bytes for u in metrics.usage.values())
    cpu_pct = percent(used_cpu, cap_cpu)
    mem_pct = percent(used_mem, cap_mem)

    report.section("Resource Utilization")
    report.line(f"CPU:    {used_cpu}m / {cap_cpu}m ({cpu_pct:.1f}%)", 2)
    report.line(f"Memory: {format_bytes(used_mem)} / {format_bytes(cap_mem)} ({mem_pct:.1f}%)", 2)
    if cpu_pct > CLUSTER_UTILIZATION_WARNING_PERCENT:
        report.warning(f"Cluster CPU utilization above {CLUSTER_UTILIZATION_WARNING_PERCENT}%", inline=True)
    if mem_pct > CLUSTER_UTILIZATION_WARNING_PERCENT:
        report.warning(f"Cluster memory utilization above {CLUSTER_UTILIZATION_WARNING_PERCENT}%", inline=True)


def _report_pod_health(report: Report, pods: List[Dict[str, Any]]) -> None:
    per_namespace: Dict[str, Dict[str, int]] = {}
    for pod in pods:
        entry = per_namespace.setdefault(namespace_of(pod), {"total": 0, "unhealthy": 0, "high_restarts": 0})
        entry["total"] += 1
        if not is_pod_healthy(pod):
            entry["unhealthy"] += 1
        if pod_container_summary(pod)[2] > HIGH_RESTART_THRESHOLD:
            entry["high_restarts"] += 1

    troubled = [(ns, e) for ns, e in per_namespace.items() if e["unhealthy"] or e["high_restarts"]]
    if not troubled:
        report.line(f"All {len(pods)} pods healthy across {len(per_namespace)} namespaces", 2)
        return

    troubled.sort(key=lambda item: item[1]["unhealthy"], reverse=True)
    report.table(
        ["NAMESPACE", "TOTAL", "UNHEALTHY", "HIGH RESTARTS"],
        [[ns, e["total"], e["unhealthy"], e["high_restarts"]] for ns, e in troubled],
    )
    total_unhealthy = sum(e["unhealthy"] for e in per_namespace.values())
    report.warning(
        f"{total_unhealthy} unhealthy pods cluster-wide",
        action="Run find_unhealthy_pods to list them, then diagnose_pod on each",
        inline=True,
    )


async def _report_service_endpoints(report: Report, client: K8sClient, services: List[Dict[str, Any]]) -> None:
    dead = degraded = checked = 0
    for svc in services:
        if (svc.get("spec") or {}).get("type") == "ExternalName" or not selector_of(svc):
            continue
        ns, name = namespace_of(svc), name_of(svc)
        try:
            health = await get_service_endpoint_health(client, ns, name)
        except Exception as e:
            report.unavailable(f"endpoints for {ns}/{name}", e)
            continue
        checked += 1
        ref = ResourceRef("Service", name, ns)
        if health.total_endpoints == 0:
            report.critical(f"{ns}/{name}: 0 endpoints (DEAD)", subject=ref, inline=True)
            dead += 1
        elif health.not_ready_count > 0:
            report.warning(
                f"{ns}/{name}: {health.not_ready_count}/{health.total_endpoints} not ready (DEGRADED)",
                subject=ref,
                inline=True,
            )
            degraded += 1
    if dead == 0 and degraded == 0:
        report.line(f"All {checked} services with selectors have healthy endpoints", 2)


def _report_recent_warnings(report: Report, events: List[Dict[str, Any]]) -> None:
    warnings = recent_warnings(events)
    if not warnings:
        report.line("No warning events in the last hour", 2)
        return
    report.warning(f"{len(warnings)} warning events in the last hour", inline=True)
    for reason, count in Counter(e.get("reason") or "Unknown" for e in warnings).most_common():
        report.line(f"{reason}: {count}", 4)


def _cluster_diagram(nodes: Optional[List[Dict[str, Any]]], ingresses: Optional[List[Dict[str, Any]]]) -> str:
    graph = TopologyGraph(Direction.TB)
    if ingresses:
        graph.add_node("internet", "Internet", Shape.CIRCLE)
        for i, ingress in enumerate(ingresses[:MAX_DIAGRAM_INGRESSES]):
            rules = (ingress.get("spec") or {}).get("rules") or []
            host = (rules[0].get("host") or "") if rules else ""
            ing_id = graph.add_node(f"ing_{i}", f"Ingress: {name_of(ingress)}{BR}{host}", Shape.TRAPEZOID_ALT)
            graph.add_edge("internet", ing_id)

    cluster = graph.add_group("cluster", "Kubernetes Cluster")
    for i, node in enumerate(nodes or []):
        graph.add_node(
            f"node_{i}",
            f"{name_of(node)}{BR}{node_status(node)}",
            Shape.RECT,
            verdict=node_health_verdict(node),
            group=cluster,
        )
    return graph.render_block()


async def cluster_health_overview(client: K8sClient) -> str:
    """One-call dashboard; each section is fetched and reported on its own."""
    report = Report("Cluster Health Overview")

    report.section("Nodes")
    nodes: Optional[List[Dict[str, Any]]] = None
    try:
        nodes = await client.list_nodes()
    except Exception as e:
        report.unavailable("nodes", e)
    else:
        _report_nodes(report, nodes)

    if nodes:
        metrics = await client.get_node_metrics()
        if metrics.available and metrics.usage:
            _report_utilization(report, nodes, metrics)

    report.section("Pod Health by Namespace")
    try:
        pods = await client.list_pods("")
    except Exception as e:
        report.unavailable("pods", e)
    else:
        _report_pod_health(report, pods)

    report.section("Service Endpoint Health")
    try:
        services = await client.list_services("")
    except Exception as e:
        report.unavailable("services", e)
    else:
        await _report_service_endpoints(report, client, services)

    report.section("Recent Warnings (last hour)")
    try:
        events = await client.list_events("")
    except Exception as e:
        report.unavailable("events", e)
    else:
        _report_recent_warnings(report, events)

    report.section(f"{SYSTEM_NAMESPACE} Health")
    try:
        system_pods = await client.list_pods(SYSTEM_NAMESPACE)
    except Exception as e:
        report.unavailable(f"{SYSTEM_NAMESPACE} pods", e)
    else:
        unhealthy = [p for p in system_pods if not is_pod_healthy(p)]
        if unhealthy:
            report.critical(
                f"{len(unhealthy)}/{len(system_pods)} unhealthy in {SYSTEM_NAMESPACE}",
                subject=ResourceRef("Namespace", SYSTEM_NAMESPACE),
                action=f"Inspect {SYSTEM_NAMESPACE} with diagnose_namespace",
                inline=True,
            )
            for pod in unhealthy:
                report.line(f"- {name_of(pod)}", 4)
        else:
            report.line(f"All {len(system_pods)} pods healthy", 2)

    report.section("Overall Assessment")
    report.line(report.verdict("Cluster is healthy. No issues found."), 2)

    ingresses = None
    try:
        ingresses = await client.list_ingresses("")
    except Exception as e:
        logger.warning(f"Could not fetch ingresses for cluster topology: {e}")
    report.diagram("CLUSTER TOPOLOGY", _cluster_diagram(nodes, ingresses))

    logger.info(f"Cluster health overview: {report.issue_count} issue(s)")
    return report.render()
