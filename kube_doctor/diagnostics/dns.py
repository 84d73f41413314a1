import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..client import K8sClient, is_not_found
from ..formatters.report import Report
from ..health import HIGH_RESTART_THRESHOLD, pod_container_summary
from ..models import ErrorPatternCount
from .common import POD_TABLE_HEADERS, name_of, pod_ref, pod_row

logger = logging.getLogger(__name__)

DNS_NAMESPACE = "kube-system"
DNS_SERVICE = "kube-dns"
LOG_TAIL_LINES = 500
LOG_SINCE_SECONDS = 3600

DNS_ERROR_PATTERNS = (
    "SERVFAIL",
    "NXDOMAIN",
    "REFUSED",
    "i/o timeout",
    "connection refused",
    "no such host",
    "plugin/errors",
    "ERROR",
)
UPSTREAM_PATTERNS = ("i/o timeout", "connection refused")

SERVFAIL_CRITICAL_COUNT = 50
SERVFAIL_WARNING_COUNT = 10
NXDOMAIN_INFO_COUNT = 100
MIN_REPLICAS = 2


@dataclass(frozen=True)
class DiscoveryStrategy:
    """One way of locating CoreDNS pods; exactly one of the two fields is set."""

    description: str
    label_selector: Optional[str] = None
    name_prefix: Optional[str] = None

    async def find(self, client: K8sClient) -> List[Dict[str, Any]]:
        if self.label_selector:
            return await client.list_pods(DNS_NAMESPACE, label_selector=self.label_selector)
        pods = await client.list_pods(DNS_NAMESPACE)
        return [p for p in pods if name_of(p).startswith(self.name_prefix)]


COREDNS_STRATEGIES = (
    DiscoveryStrategy("label k8s-app=kube-dns", label_selector="k8s-app=kube-dns"),
    DiscoveryStrategy("label app.kubernetes.io/name=coredns", label_selector="app.kubernetes.io/name=coredns"),
    DiscoveryStrategy("name prefix coredns-", name_prefix="coredns-"),
)


async def discover_coredns_pods(
    client: K8sClient, strategies=COREDNS_STRATEGIES
) -> Tuple[Optional[DiscoveryStrategy], List[Dict[str, Any]]]:
    """Try each strategy in order; the first non-empty result wins."""
    for strategy in strategies:
        pods = await strategy.find(client)
        if pods:
            logger.debug(f"Found {len(pods)} CoreDNS pods by {strategy.description}")
            return strategy, pods
    return None, []


def scan_log_patterns(logs: str, patterns=DNS_ERROR_PATTERNS) -> List[ErrorPatternCount]:
    """Case-sensitive substring counts per pattern, one hit per line at most."""
    lines = logs.splitlines()
    return [ErrorPatternCount(p, sum(1 for line in lines if p in line)) for p in patterns]


def _dns_container(pod: Dict[str, Any]) -> str:
    containers = (pod.get("spec") or {}).get("containers") or []
    for container in containers:
        if "coredns" in container.get("name", "") or "dns" in container.get("name", ""):
            return container["name"]
    return containers[0].get("name", "") if containers else ""


def _check_dns_pod(report: Report, pod: Dict[str, Any]) -> bool:
    """Pod-level findings; returns whether the pod is Running."""
    name = name_of(pod)
    ref = pod_ref(pod)
    status = pod.get("status") or {}
    running = status.get("phase") == "Running"
    if not running:
        report.critical(f"CoreDNS pod '{name}' is {status.get('phase') or 'Unknown'} (not Running)", subject=ref)

    _, _, restarts = pod_container_summary(pod)
    if restarts > HIGH_RESTART_THRESHOLD:
        report.warning(f"CoreDNS pod '{name}' has {restarts} restarts", subject=ref)
    elif restarts > 0:
        report.info(f"CoreDNS pod '{name}' has {restarts} restart(s)", subject=ref)

    for cond in status.get("conditions") or []:
        if cond.get("type") == "Ready" and cond.get("status") != "True":
            report.critical(f"CoreDNS pod '{name}' is not ready: {cond.get('message') or ''}".rstrip(), subject=ref)

    for cs in status.get("containerStatuses") or []:
        waiting = (cs.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") == "CrashLoopBackOff":
            report.critical(f"CoreDNS container '{cs.get('name')}' in pod '{name}' is in CrashLoopBackOff", subject=ref)
        last = (cs.get("lastState") or {}).get("terminated") or {}
        if last.get("reason") == "OOMKilled":
            report.critical(
                f"CoreDNS container '{cs.get('name')}' in pod '{name}' was OOMKilled - increase memory limit",
                subject=ref,
                action="Increase the CoreDNS memory limit in kube-system",
            )
    return running


async def check_dns_health(client: K8sClient) -> str:
    """CoreDNS discovery, pod health and a log scan for resolver errors."""
    report = Report("DNS Health Check")

    strategy, pods = await discover_coredns_pods(client)
    if not pods:
        report.critical(
            f"No CoreDNS pods found in {DNS_NAMESPACE} namespace",
            action=f"Check whether CoreDNS is deployed in {DNS_NAMESPACE}",
        )
        report.line("DNS resolution will not work in the cluster.", 2)
        report.line("Tried: " + ", ".join(s.description for s in COREDNS_STRATEGIES), 2)
        report.section("Overall DNS Assessment")
        report.line("Pods running: 0", 2)
        return report.render()

    report.key_value("Discovered by", strategy.description, 0)
    try:
        service = await client.get_service(DNS_NAMESPACE, DNS_SERVICE)
    except Exception as e:
        if not is_not_found(e):
            report.unavailable(f"service {DNS_SERVICE}", e, 0)
        else:
            report.warning(f"CoreDNS service '{DNS_SERVICE}' not found in {DNS_NAMESPACE}")
    else:
        report.key_value("Service", f"{DNS_SERVICE} (ClusterIP: {(service.get('spec') or {}).get('clusterIP')})", 0)

    report.section("CoreDNS Pod Status")
    report.table(POD_TABLE_HEADERS, [pod_row(p) for p in pods])

    running = sum(1 for p in pods if _check_dns_pod(report, p))
    if len(pods) < MIN_REPLICAS:
        report.warning(
            f"Only {len(pods)} CoreDNS pod running - no DNS redundancy. "
            f"Consider scaling to at least {MIN_REPLICAS} replicas.",
            action=f"Scale CoreDNS to at least {MIN_REPLICAS} replicas for high availability",
        )
    if running == 0:
        report.suggest(f"URGENT: No healthy CoreDNS pods. Check CoreDNS deployment and events in {DNS_NAMESPACE}")

    report.section("Log Analysis")
    totals = {p: 0 for p in DNS_ERROR_PATTERNS}
    for pod in pods:
        name = name_of(pod)
        try:
            logs = await client.get_pod_logs(
                DNS_NAMESPACE, name, _dns_container(pod), tail_lines=LOG_TAIL_LINES, since_seconds=LOG_SINCE_SECONDS
            )
        except Exception as e:
            report.unavailable(f"logs for pod '{name}'", e)
            continue
        if not logs:
            report.line(f"Pod '{name}': no logs available", 2)
            continue

        report.line(f"Pod '{name}' log scan (last 1h):", 2)
        counts = [c for c in scan_log_patterns(logs) if c.count > 0]
        for count in counts:
            totals[count.pattern] += count.count
            report.line(f"{count.pattern}: {count.count} occurrences", 4)
        if not counts:
            report.line("No error patterns found in logs.", 4)

    if totals["SERVFAIL"] > SERVFAIL_CRITICAL_COUNT:
        report.critical(f"High SERVFAIL rate: {totals['SERVFAIL']} occurrences - DNS resolution is failing")
    elif totals["SERVFAIL"] > SERVFAIL_WARNING_COUNT:
        report.warning(f"Elevated SERVFAIL count: {totals['SERVFAIL']} - some DNS queries are failing")
    if totals["SERVFAIL"] > SERVFAIL_WARNING_COUNT:
        report.suggest("Investigate SERVFAIL errors - check upstream DNS configuration in the CoreDNS ConfigMap")
    if totals["NXDOMAIN"] > NXDOMAIN_INFO_COUNT:
        report.info(f"High NXDOMAIN count: {totals['NXDOMAIN']} - check if services have correct DNS names")
    for pattern in UPSTREAM_PATTERNS:
        if totals[pattern] > 0:
            report.warning(
                f"Upstream DNS connectivity issues: {totals[pattern]} '{pattern}' errors",
                action=f"Check upstream DNS server connectivity and network policies affecting {DNS_NAMESPACE}",
            )

    report.section("Overall DNS Assessment")
    report.line(f"Pods running: {running}/{len(pods)}", 2)
    total_errors = sum(totals.values())
    if report.issue_count == 0:
        report.line("CoreDNS is healthy, no error patterns detected.", 2)
    else:
        report.line(f"{report.issue_count} issue(s) found.", 2)
        if total_errors:
            report.line(f"Total error patterns in logs: {total_errors}", 2)

    logger.info(f"DNS health check: {running}/{len(pods)} CoreDNS pods running, {report.issue_count} issue(s)")
    return report.render()
