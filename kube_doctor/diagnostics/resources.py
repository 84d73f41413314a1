import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..client import K8sClient, display_namespace, normalize_namespace
from ..formatters.mermaid import XYChart
from ..formatters.report import Report, top_n, truncate_name
from ..health import (
    CRITICAL_PERCENT,
    LOW_EFFICIENCY_PERCENT,
    MODERATE_EFFICIENCY_PERCENT,
    NODE_REQUEST_WARNING_PERCENT,
    OVERPROVISIONED_PERCENT,
    PRESSURE_CONDITIONS,
    WARNING_PERCENT,
    format_bytes,
    is_pod_active,
    node_status,
    parse_cpu,
    parse_memory,
    parse_quantity,
    percent,
    pod_resources,
)
from ..models import MetricsSnapshot, ResourceRef
from .common import name_of, namespace_of

logger = logging.getLogger(__name__)

CHART_TOP_N = 10
CHART_THRESHOLD_PERCENT = 80.0
CHART_MAX_PERCENT = 120


class UsageCategory(str, Enum):
    MISSING_LIMITS = "MISSING LIMITS"
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    OVERPROVISIONED = "OVERPROVISIONED"
    OK = "OK"


@dataclass
class PodUsage:
    """Requests, limits and live usage of one pod, summed over its containers."""

    name: str
    namespace: str
    cpu_request: int = 0
    cpu_limit: int = 0
    mem_request: int = 0
    mem_limit: int = 0
    cpu_usage: int = 0
    mem_usage: int = 0
    has_metrics: bool = False

    @classmethod
    def from_pod(cls, pod: Dict[str, Any], metrics: MetricsSnapshot) -> "PodUsage":
        res = pod_resources(pod)
        usage = metrics.pod(namespace_of(pod), name_of(pod))
        return cls(
            name=name_of(pod),
            namespace=namespace_of(pod),
            cpu_request=res["cpu_request"],
            cpu_limit=res["cpu_limit"],
            mem_request=res["mem_request"],
            mem_limit=res["mem_limit"],
            cpu_usage=usage.cpu_millicores if usage else 0,
            mem_usage=usage.memory_bytes if usage else 0,
            has_metrics=usage is not None,
        )

    @property
    def cpu_pct_of_limit(self) -> float:
        return percent(self.cpu_usage, self.cpu_limit) if self.has_metrics else 0.0

    @property
    def mem_pct_of_limit(self) -> float:
        return percent(self.mem_usage, self.mem_limit) if self.has_metrics else 0.0

    @property
    def cpu_pct_of_request(self) -> float:
        return percent(self.cpu_usage, self.cpu_request) if self.has_metrics else 0.0

    @property
    def mem_pct_of_request(self) -> float:
        return percent(self.mem_usage, self.mem_request) if self.has_metrics else 0.0

    @property
    def missing_limits(self) -> bool:
        return self.cpu_limit == 0 or self.mem_limit == 0

    @property
    def missing_requests(self) -> bool:
        return self.cpu_request == 0 or self.mem_request == 0

    @property
    def cpu_waste(self) -> int:
        return max(self.cpu_request - self.cpu_usage, 0)

    @property
    def mem_waste(self) -> int:
        return max(self.mem_request - self.mem_usage, 0)


def categorize(usage: PodUsage) -> UsageCategory:
    """First matching category wins, in order of severity."""
    if usage.missing_limits and usage.missing_requests:
        return UsageCategory.MISSING_LIMITS
    if usage.has_metrics and (usage.cpu_pct_of_limit > CRITICAL_PERCENT or usage.mem_pct_of_limit > CRITICAL_PERCENT):
        return UsageCategory.CRITICAL
    if usage.has_metrics and (usage.cpu_pct_of_limit > WARNING_PERCENT or usage.mem_pct_of_limit > WARNING_PERCENT):
        return UsageCategory.WARNING
    if (
        usage.has_metrics
        and usage.cpu_request > 0
        and usage.mem_request > 0
        and usage.cpu_pct_of_request < OVERPROVISIONED_PERCENT
        and usage.mem_pct_of_request < OVERPROVISIONED_PERCENT
    ):
        return UsageCategory.OVERPROVISIONED
    if usage.missing_limits:
        return UsageCategory.MISSING_LIMITS
    return UsageCategory.OK


def _pct(value: float, available: bool) -> str:
    return f"{value:.1f}%" if available else "N/A"


async def analyze_resource_usage(client: K8sClient, namespace: str = "") -> str:
    """Usage against requests and limits for every active pod of a namespace."""
    namespace = normalize_namespace(namespace)
    report = Report(f"Resource Usage Analysis (namespace: {display_namespace(namespace)})")

    pods = await client.list_pods(namespace)
    metrics = await client.get_pod_metrics(namespace)
    if not metrics.available:
        report.line("(metrics-server not available - usage data unavailable)")

    analyses = [PodUsage.from_pod(p, metrics) for p in pods if is_pod_active(p)]
    categories = [categorize(a) for a in analyses]

    report.section("Summary")
    report.key_value("Active Pods Analyzed", len(analyses))
    report.key_value(f"CRITICAL (>{CRITICAL_PERCENT}% of limit)", categories.count(UsageCategory.CRITICAL))
    report.key_value(f"WARNING (>{WARNING_PERCENT}% of limit)", categories.count(UsageCategory.WARNING))
    report.key_value(
        f"OVERPROVISIONED (<{OVERPROVISIONED_PERCENT}% of request)", categories.count(UsageCategory.OVERPROVISIONED)
    )
    report.key_value("MISSING LIMITS/REQUESTS", categories.count(UsageCategory.MISSING_LIMITS))

    report.line("")
    report.line("Namespace Totals:", 2)
    report.line(
        f"CPU Requests: {sum(a.cpu_request for a in analyses)}m, "
        f"Limits: {sum(a.cpu_limit for a in analyses)}m, "
        f"Usage: {sum(a.cpu_usage for a in analyses)}m",
        4,
    )
    report.line(
        f"Memory Requests: {format_bytes(sum(a.mem_request for a in analyses))}, "
        f"Limits: {format_bytes(sum(a.mem_limit for a in analyses))}, "
        f"Usage: {format_bytes(sum(a.mem_usage for a in analyses))}",
        4,
    )

    report.section("Pod Resource Details")
    report.table(
        ["POD", "CATEGORY", "CPU USE/REQ/LIM", "CPU%LIM", "MEM USE/REQ/LIM", "MEM%LIM"],
        [
            [
                truncate_name(a.name, 40),
                category.value,
                f"{a.cpu_usage}m/{a.cpu_request}m/{a.cpu_limit}m",
                _pct(a.cpu_pct_of_limit, a.has_metrics and a.cpu_limit > 0),
                f"{format_bytes(a.mem_usage)}/{format_bytes(a.mem_request)}/{format_bytes(a.mem_limit)}",
                _pct(a.mem_pct_of_limit, a.has_metrics and a.mem_limit > 0),
            ]
            for a, category in zip(analyses, categories)
        ],
    )

    for a, category in zip(analyses, categories):
        ref = ResourceRef("Pod", a.name, a.namespace)
        if category == UsageCategory.CRITICAL:
            if a.cpu_pct_of_limit > CRITICAL_PERCENT:
                report.critical(
                    f"Pod '{a.name}' CPU usage at {a.cpu_pct_of_limit:.1f}% of limit ({a.cpu_usage}m/{a.cpu_limit}m)",
                    subject=ref,
                    action=f"Raise the CPU limit of pod '{a.name}' or scale out its workload",
                )
            if a.mem_pct_of_limit > CRITICAL_PERCENT:
                report.critical(
                    f"Pod '{a.name}' memory usage at {a.mem_pct_of_limit:.1f}% of limit "
                    f"({format_bytes(a.mem_usage)}/{format_bytes(a.mem_limit)}) - OOM risk",
                    subject=ref,
                    action=f"Increase memory limit for pod '{a.name}'",
                )
        elif category == UsageCategory.WARNING:
            if a.cpu_pct_of_limit > WARNING_PERCENT:
                report.warning(f"Pod '{a.name}' CPU usage at {a.cpu_pct_of_limit:.1f}% of limit", subject=ref)
            if a.mem_pct_of_limit > WARNING_PERCENT:
                report.warning(f"Pod '{a.name}' memory usage at {a.mem_pct_of_limit:.1f}% of limit", subject=ref)
        elif category == UsageCategory.OVERPROVISIONED:
            report.info(
                f"Pod '{a.name}' is overprovisioned: CPU {a.cpu_pct_of_request:.1f}% of request, "
                f"memory {a.mem_pct_of_request:.1f}% of request - consider reducing requests",
                subject=ref,
            )
        elif category == UsageCategory.MISSING_LIMITS:
            report.warning(
                f"Pod '{a.name}' is missing resource limits/requests",
                subject=ref,
                action="Set CPU and memory requests and limits on every container",
            )

    if metrics.available:
        charted = [a for a in analyses if a.has_metrics and a.cpu_limit > 0]
        top = top_n(charted, lambda a: a.cpu_pct_of_limit, CHART_TOP_N)
        if top:
            chart = (
                XYChart("Top Pods by CPU Usage % of Limit")
                .set_x_axis([truncate_name(a.name, 15) for a in top])
                .set_y_axis("CPU Usage % of Limit", 0, CHART_MAX_PERCENT)
                .add_bar([a.cpu_pct_of_limit for a in top])
                .add_line([CHART_THRESHOLD_PERCENT] * len(top))
            )
            report.diagram("RESOURCE USAGE CHART", chart.render_block())

    logger.info(f"Resource usage analysis for {display_namespace(namespace)}: {len(analyses)} pods")
    return report.render()


@dataclass
class NodeCapacity:
    name: str
    cpu_allocatable: int = 0
    mem_allocatable: int = 0
    pod_capacity: int = 0
    cpu_requests: int = 0
    mem_requests: int = 0
    pod_count: int = 0
    cpu_usage: int = 0
    mem_usage: int = 0
    has_metrics: bool = False
    condition_issues: List[str] = field(default_factory=list)

    @property
    def cpu_request_pct(self) -> float:
        return percent(self.cpu_requests, self.cpu_allocatable)

    @property
    def mem_request_pct(self) -> float:
        return percent(self.mem_requests, self.mem_allocatable)

    @property
    def cpu_usage_pct(self) -> float:
        return percent(self.cpu_usage, self.cpu_allocatable) if self.has_metrics else 0.0

    @property
    def mem_usage_pct(self) -> float:
        return percent(self.mem_usage, self.mem_allocatable) if self.has_metrics else 0.0

    @property
    def cpu_headroom(self) -> int:
        return self.cpu_allocatable - self.cpu_requests

    @property
    def mem_headroom(self) -> int:
        return self.mem_allocatable - self.mem_requests


def node_capacities(
    nodes: List[Dict[str, Any]], pods: List[Dict[str, Any]], metrics: Optional[MetricsSnapshot] = None
) -> List[NodeCapacity]:
    """Allocatable, summed requests of active scheduled pods, and live usage per node."""
    capacities: Dict[str, NodeCapacity] = {}
    for node in nodes:
        allocatable = (node.get("status") or {}).get("allocatable") or {}
        cap = NodeCapacity(
            name=name_of(node),
            cpu_allocatable=parse_cpu(allocatable.get("cpu")),
            mem_allocatable=parse_memory(allocatable.get("memory")),
            pod_capacity=int(parse_quantity(allocatable.get("pods"))),
        )
        usage = metrics.get(cap.name) if metrics is not None else None
        if usage is not None:
            cap.has_metrics = True
            cap.cpu_usage = usage.cpu_millicores
            cap.mem_usage = usage.memory_bytes
        if node_status(node) != "Ready":
            cap.condition_issues.append("NotReady")
        for cond in (node.get("status") or {}).get("conditions") or []:
            if cond.get("type") in PRESSURE_CONDITIONS and cond.get("status") == "True":
                cap.condition_issues.append(cond["type"])
        capacities[cap.name] = cap

    for pod in pods:
        node_name = (pod.get("spec") or {}).get("nodeName")
        if not is_pod_active(pod) or node_name not in capacities:
            continue
        res = pod_resources(pod)
        cap = capacities[node_name]
        cap.cpu_requests += res["cpu_request"]
        cap.mem_requests += res["mem_request"]
        cap.pod_count += 1

    return list(capacities.values())


async def analyze_node_capacity(client: K8sClient) -> str:
    report = Report("Node Capacity Analysis")

    nodes = await client.list_nodes()
    metrics = await client.get_node_metrics()
    pods = await client.list_pods()
    if not metrics.available:
        report.line("(metrics-server not available - actual usage unavailable)")

    capacities = node_capacities(nodes, pods, metrics)

    report.section("Nodes")
    report.table(
        ["NODE", "PODS", "CPU ALLOC", "CPU REQ", "CPU REQ%", "CPU USE", "CPU USE%", "MEM ALLOC", "MEM REQ%",
         "MEM USE%", "CONDITIONS"],
        [
            [
                c.name,
                f"{c.pod_count}/{c.pod_capacity}",
                f"{c.cpu_allocatable}m",
                f"{c.cpu_requests}m",
                f"{c.cpu_request_pct:.1f}%",
                f"{c.cpu_usage}m" if c.has_metrics else "N/A",
                _pct(c.cpu_usage_pct, c.has_metrics),
                format_bytes(c.mem_allocatable),
                f"{c.mem_request_pct:.1f}%",
                _pct(c.mem_usage_pct, c.has_metrics),
                ",".join(c.condition_issues) or "OK",
            ]
            for c in capacities
        ],
    )

    report.section("Scheduling Headroom")
    report.table(
        ["NODE", "CPU HEADROOM", "MEMORY HEADROOM"],
        [[c.name, f"{c.cpu_headroom}m", format_bytes(c.mem_headroom) if c.mem_headroom >= 0 else f"-{format_bytes(-c.mem_headroom)}"]
         for c in capacities],
    )

    for c in capacities:
        ref = ResourceRef("Node", c.name)
        for issue in c.condition_issues:
            if issue == "NotReady":
                report.critical(f"Node '{c.name}' is NotReady", subject=ref, action=f"Inspect kubelet status on node '{c.name}'")
            else:
                report.warning(f"Node '{c.name}' has {issue}", subject=ref)
        for resource, pct in (("CPU", c.cpu_request_pct), ("memory", c.mem_request_pct)):
            if pct > CRITICAL_PERCENT:
                report.critical(
                    f"Node '{c.name}' {resource} requests at {pct:.1f}% of allocatable - scheduling may fail",
                    subject=ref,
                    action="Add nodes or reduce pod requests to restore scheduling headroom",
                )
            elif pct > NODE_REQUEST_WARNING_PERCENT:
                report.warning(f"Node '{c.name}' {resource} requests at {pct:.1f}% of allocatable", subject=ref)
        if c.has_metrics and c.cpu_usage_pct > CRITICAL_PERCENT:
            report.critical(f"Node '{c.name}' actual CPU utilization at {c.cpu_usage_pct:.1f}%", subject=ref)
        if c.has_metrics and c.mem_usage_pct > CRITICAL_PERCENT:
            report.critical(f"Node '{c.name}' actual memory utilization at {c.mem_usage_pct:.1f}%", subject=ref)
        if c.cpu_headroom < 0:
            report.warning(f"Node '{c.name}' is overcommitted on CPU by {-c.cpu_headroom}m", subject=ref)
        if c.mem_headroom < 0:
            report.warning(f"Node '{c.name}' is overcommitted on memory by {format_bytes(-c.mem_headroom)}", subject=ref)

    if capacities:
        chart = (
            XYChart("Per-Node CPU Utilization")
            .set_x_axis([truncate_name(c.name, 15) for c in capacities])
            .set_y_axis(
                "CPU Utilization %" if metrics.available else "CPU Request Utilization %", 0, CHART_MAX_PERCENT
            )
            .add_bar([c.cpu_usage_pct if c.has_metrics else c.cpu_request_pct for c in capacities])
        )
        report.diagram("NODE CPU UTILIZATION CHART", chart.render_block())

    logger.info(f"Node capacity analysis: {len(capacities)} nodes, {report.issue_count} issue(s)")
    return report.render()


async def analyze_resource_efficiency(client: K8sClient, namespace: str = "") -> str:
    """Waste, bin packing and right-sizing candidates, cluster-wide or per namespace."""
    namespace = normalize_namespace(namespace)
    scope = display_namespace(namespace)
    report = Report(f"Resource Efficiency Report (scope: {scope})")

    pods = await client.list_pods(namespace)
    metrics = await client.get_pod_metrics(namespace)
    if not metrics.available:
        report.line("(metrics-server not available - waste calculations require metrics data)")

    active = [p for p in pods if is_pod_active(p)]
    analyses = [PodUsage.from_pod(p, metrics) for p in active]
    no_requests = [f"{a.namespace}/{a.name}" for a in analyses if a.cpu_request == 0 and a.mem_request == 0]
    no_limits = [f"{a.namespace}/{a.name}" for a in analyses if a.cpu_limit == 0 and a.mem_limit == 0]

    cpu_req = sum(a.cpu_request for a in analyses)
    mem_req = sum(a.mem_request for a in analyses)
    cpu_use = sum(a.cpu_usage for a in analyses)
    mem_use = sum(a.mem_usage for a in analyses)
    cpu_eff = percent(cpu_use, cpu_req)
    mem_eff = percent(mem_use, mem_req)

    report.section("Waste Analysis")
    if metrics.available:
        report.key_value("Total CPU Requested", f"{cpu_req}m")
        report.key_value("Total CPU Used", f"{cpu_use}m")
        report.key_value("Total CPU Waste", f"{max(cpu_req - cpu_use, 0)}m (efficiency: {cpu_eff:.1f}%)")
        report.key_value("Total Memory Requested", format_bytes(mem_req))
        report.key_value("Total Memory Used", format_bytes(mem_use))
        report.key_value("Total Memory Waste", f"{format_bytes(max(mem_req - mem_use, 0))} (efficiency: {mem_eff:.1f}%)")
    else:
        report.line("Waste calculations unavailable without metrics-server.", 2)
        report.key_value("Total CPU Requested", f"{cpu_req}m, Limits: {sum(a.cpu_limit for a in analyses)}m")
        report.key_value(
            "Total Memory Requested",
            f"{format_bytes(mem_req)}, Limits: {format_bytes(sum(a.mem_limit for a in analyses))}",
        )

    try:
        nodes = await client.list_nodes()
    except Exception as e:
        report.section("Bin Packing Efficiency (per Node)")
        report.unavailable("nodes", e)
    else:
        if nodes:
            report.section("Bin Packing Efficiency (per Node)")
            report.table(
                ["NODE", "PODS", "CPU PACKING", "MEMORY PACKING"],
                [
                    [c.name, c.pod_count, f"{c.cpu_request_pct:.1f}%", f"{c.mem_request_pct:.1f}%"]
                    for c in node_capacities(nodes, active)
                ],
            )

    if metrics.available:
        report.section("Right-Sizing Opportunities")
        candidates = [
            a
            for a in analyses
            if a.has_metrics
            and (
                (a.cpu_request > 0 and a.cpu_pct_of_request < OVERPROVISIONED_PERCENT)
                or (a.mem_request > 0 and a.mem_pct_of_request < OVERPROVISIONED_PERCENT)
            )
        ]
        if not candidates:
            report.line(f"No pods with usage below {OVERPROVISIONED_PERCENT}% of requests found.", 2)
        else:
            report.table(
                ["POD", "NAMESPACE", "CPU USE/REQ", "CPU%", "WASTE", "MEM USE/REQ", "MEM%", "WASTE"],
                [
                    [
                        truncate_name(a.name, 35),
                        a.namespace,
                        f"{a.cpu_usage}m/{a.cpu_request}m",
                        f"{a.cpu_pct_of_request:.1f}%",
                        f"{a.cpu_waste}m",
                        f"{format_bytes(a.mem_usage)}/{format_bytes(a.mem_request)}",
                        f"{a.mem_pct_of_request:.1f}%",
                        format_bytes(a.mem_waste),
                    ]
                    for a in candidates
                ],
            )

    if no_requests:
        report.warning(
            f"{len(no_requests)} pods have no resource requests set: {', '.join(no_requests)}",
            action=f"Set resource requests on all {len(no_requests)} pods without them to improve scheduling reliability",
        )
    if no_limits:
        report.warning(
            f"{len(no_limits)} pods have no resource limits set: {', '.join(no_limits)}",
            action=f"Set resource limits on all {len(no_limits)} pods without them to prevent resource contention",
        )

    if metrics.available:
        for label, resource, total_req, eff, waste in (
            ("CPU", "CPU", cpu_req, cpu_eff, f"{max(cpu_req - cpu_use, 0)}m"),
            ("Memory", "memory", mem_req, mem_eff, format_bytes(max(mem_req - mem_use, 0))),
        ):
            if total_req <= 0:
                continue
            action = f"Reduce {resource} requests for overprovisioned pods to reclaim {waste} of wasted {resource}"
            if eff < LOW_EFFICIENCY_PERCENT:
                report.warning(
                    f"Overall {resource} efficiency is only {eff:.1f}% - significant overprovisioning", action=action
                )
            elif eff < MODERATE_EFFICIENCY_PERCENT:
                report.info(f"{label} efficiency at {eff:.1f}% - consider right-sizing workloads", action=action)

    logger.info(f"Resource efficiency analysis for {scope}: {len(analyses)} pods")
    return report.render()
