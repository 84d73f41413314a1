import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..client import K8sClient, event_time
from ..formatters.report import Report, format_age
from ..health import (
    HIGH_RESTART_THRESHOLD,
    container_resources,
    format_bytes,
    is_pod_healthy,
    percent,
    pod_container_summary,
    pod_phase_reason,
    usage_severity,
)
from ..models import MetricsSnapshot, ResourceRef, Severity

logger = logging.getLogger(__name__)

POD_TABLE_HEADERS = ["POD", "NODE", "READY", "RESTARTS", "STATUS", "AGE"]


def name_of(resource: Dict[str, Any]) -> str:
    return (resource.get("metadata") or {}).get("name", "")


def namespace_of(resource: Dict[str, Any]) -> str:
    return (resource.get("metadata") or {}).get("namespace", "")


def labels_of(resource: Dict[str, Any]) -> Dict[str, str]:
    return (resource.get("metadata") or {}).get("labels") or {}


def selector_of(service: Dict[str, Any]) -> Dict[str, str]:
    return (service.get("spec") or {}).get("selector") or {}


def pod_ref(pod: Dict[str, Any]) -> ResourceRef:
    return ResourceRef.from_resource("Pod", pod)


def pod_row(pod: Dict[str, Any]) -> List[str]:
    ready, total, restarts = pod_container_summary(pod)
    return [
        name_of(pod),
        (pod.get("spec") or {}).get("nodeName") or "<none>",
        f"{ready}/{total}",
        str(restarts),
        pod_phase_reason(pod),
        format_age((pod.get("metadata") or {}).get("creationTimestamp")),
    ]


async def warning_events(
    client: K8sClient, report: Report, namespace: str, name: str, what: str, indent: int = 4
) -> Optional[List[Dict[str, Any]]]:
    """Warning events for one object, or None after noting the fetch failure."""
    try:
        events = await client.get_events_for_object(namespace, name)
    except Exception as e:
        report.unavailable(f"events for {what}", e, indent)
        return None
    return [e for e in events if e.get("type") == "Warning"]


def check_pod_health(report: Report, pod: Dict[str, Any], indent: int = 4, inline: bool = True) -> None:
    """Shared per-pod rule set: health, restarts, limits and probes."""
    name = name_of(pod)
    ref = pod_ref(pod)

    if not is_pod_healthy(pod):
        report.critical(
            f"Pod '{name}' is unhealthy: {pod_phase_reason(pod)}",
            subject=ref,
            action=f"Diagnose pod '{name}' with the diagnose_pod tool",
            inline=inline,
            indent=indent,
        )

    _, _, restarts = pod_container_summary(pod)
    if restarts > HIGH_RESTART_THRESHOLD:
        report.warning(f"Pod '{name}' has {restarts} restarts", subject=ref, inline=inline, indent=indent)

    for container in (pod.get("spec") or {}).get("containers") or []:
        c_name = container.get("name", "")
        res = container_resources(container)
        if res["cpu_limit"] == 0 and res["mem_limit"] == 0:
            report.info(
                f"Pod '{name}' container '{c_name}' has no resource limits",
                subject=ref,
                inline=inline,
                indent=indent,
            )
        if not container.get("readinessProbe"):
            report.warning(
                f"Pod '{name}' container '{c_name}' has no readiness probe",
                subject=ref,
                action=f"Add a readiness probe to container '{c_name}'",
                inline=inline,
                indent=indent,
            )
        if not container.get("livenessProbe"):
            report.line(f"(note) Pod '{name}' container '{c_name}' has no liveness probe", indent)


def report_container_usage(
    report: Report, pods: List[Dict[str, Any]], metrics: MetricsSnapshot, indent: int = 4
) -> None:
    """Per-container usage against limits; requires an available snapshot."""
    for pod in pods:
        name = name_of(pod)
        namespace = namespace_of(pod)
        if metrics.pod(namespace, name) is None:
            report.line(f"{name}: (no metrics reported)", indent)
            continue

        for container in (pod.get("spec") or {}).get("containers") or []:
            c_name = container.get("name", "")
            usage = metrics.container(namespace, name, c_name)
            if usage is None:
                continue
            res = container_resources(container)

            cpu_pct = "N/A"
            if res["cpu_limit"] > 0:
                pct = percent(usage.cpu_millicores, res["cpu_limit"])
                cpu_pct = f"{pct:.0f}%"
                severity = usage_severity(pct)
                if severity:
                    report.finding(
                        severity,
                        f"{name}/{c_name}: CPU at {pct:.0f}% of limit",
                        subject=pod_ref(pod),
                        inline=True,
                        indent=indent,
                    )

            mem_pct = "N/A"
            if res["mem_limit"] > 0:
                pct = percent(usage.memory_bytes, res["mem_limit"])
                mem_pct = f"{pct:.0f}%"
                severity = usage_severity(pct)
                if severity == Severity.CRITICAL:
                    report.critical(
                        f"{name}/{c_name}: Memory at {pct:.0f}% of limit - OOM risk",
                        subject=pod_ref(pod),
                        action=f"Increase memory limit for {name}/{c_name}",
                        inline=True,
                        indent=indent,
                    )
                elif severity == Severity.WARNING:
                    report.warning(
                        f"{name}/{c_name}: Memory at {pct:.0f}% of limit",
                        subject=pod_ref(pod),
                        inline=True,
                        indent=indent,
                    )

            cpu_limit = f"{res['cpu_limit']}m" if res["cpu_limit"] else "none"
            mem_limit = format_bytes(res["mem_limit"]) if res["mem_limit"] else "none"
            report.line(
                f"{name}/{c_name}: CPU {usage.cpu_millicores}m/{cpu_limit} ({cpu_pct})  "
                f"Mem {format_bytes(usage.memory_bytes)}/{mem_limit} ({mem_pct})",
                indent,
            )


def recent_warnings(
    events: List[Dict[str, Any]], window: timedelta = timedelta(hours=1), now: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    """Warning events seen within ``window`` of ``now``."""
    cutoff = (now or datetime.now(timezone.utc)) - window
    return [e for e in events if e.get("type") == "Warning" and event_time(e) > cutoff]
