import logging
from typing import Any, Dict, List

from ..client import K8sClient, display_namespace, is_not_found, normalize_namespace
from ..formatters.report import Report, format_age
from ..health import (
    HIGH_RESTART_THRESHOLD,
    QUOTA_WARNING_PERCENT,
    container_resources,
    format_bytes,
    is_pod_healthy,
    parse_quantity,
    percent,
    pod_container_summary,
    pod_phase_reason,
)
from ..models import ResourceRef
from .common import name_of, namespace_of, pod_ref, recent_warnings

logger = logging.getLogger(__name__)

CRASH_LOG_TAIL_LINES = 50
IMAGE_PULL_REASONS = ("ImagePullBackOff", "ErrImagePull")


async def diagnose_pod(client: K8sClient, namespace: str, name: str) -> str:
    """Container states, conditions, limits, events and crash logs of one pod."""
    report = Report(f"Pod Diagnosis: {name} (namespace: {namespace})")
    try:
        pod = await client.get_pod(namespace, name)
    except Exception as e:
        message = f"Pod '{namespace}/{name}' not found" if is_not_found(e) else f"Could not get pod '{namespace}/{name}': {e}"
        report.critical(message, subject=ResourceRef("Pod", name, namespace), inline=True, indent=0)
        return report.render()

    ref = pod_ref(pod)
    spec = pod.get("spec") or {}
    status = pod.get("status") or {}
    _, _, restarts = pod_container_summary(pod)

    report.key_value("STATUS", pod_phase_reason(pod), 0)
    report.key_value("RESTARTS", restarts, 0)
    report.key_value("NODE", spec.get("nodeName") or "<none>", 0)
    report.key_value("AGE", format_age((pod.get("metadata") or {}).get("creationTimestamp")), 0)

    limits_by_container = {c.get("name"): container_resources(c) for c in spec.get("containers") or []}
    crashing: List[str] = []

    report.section("Containers")
    for cs in status.get("containerStatuses") or []:
        c_name = cs.get("name", "")
        state = cs.get("state") or {}
        waiting = state.get("waiting")
        terminated = state.get("terminated")
        last_terminated = (cs.get("lastState") or {}).get("terminated") or {}
        report.line(f"{c_name}: ready={bool(cs.get('ready'))} restarts={cs.get('restartCount') or 0}", 2)

        if waiting is not None:
            reason = waiting.get("reason") or ""
            if reason == "CrashLoopBackOff":
                crashing.append(c_name)
                report.critical(
                    f"Container '{c_name}' is in CrashLoopBackOff",
                    subject=ref,
                    action=f"Check application logs for container '{c_name}' (previous instance)",
                    inline=True,
                    indent=4,
                )
                if last_terminated:
                    report.line(f"- Last termination reason: {last_terminated.get('reason')}", 6)
                    report.line(f"- Exit code: {last_terminated.get('exitCode')}", 6)
                    if last_terminated.get("reason") == "OOMKilled":
                        report.line("- Container was killed due to out-of-memory", 6)
            elif reason in IMAGE_PULL_REASONS:
                report.critical(
                    f"Container '{c_name}' cannot pull image: {waiting.get('message') or reason}",
                    subject=ref,
                    action=f"Check image name and registry credentials for container '{c_name}'",
                    inline=True,
                    indent=4,
                )
            else:
                report.warning(f"Container '{c_name}' is waiting: {reason}", subject=ref, inline=True, indent=4)

        if terminated and terminated.get("exitCode"):
            report.warning(
                f"Container '{c_name}' terminated with exit code {terminated.get('exitCode')} ({terminated.get('reason')})",
                subject=ref,
                inline=True,
                indent=4,
            )
        if (cs.get("restartCount") or 0) > HIGH_RESTART_THRESHOLD:
            report.warning(
                f"Container '{c_name}' has high restart count: {cs.get('restartCount')}", subject=ref, inline=True, indent=4
            )
        if last_terminated.get("reason") == "OOMKilled":
            mem_limit = limits_by_container.get(c_name, {}).get("mem_limit")
            if mem_limit:
                report.suggest(
                    f"Increase memory limit for container '{c_name}' (currently {format_bytes(mem_limit)}, OOMKilled)"
                )
            else:
                report.suggest(f"Set a memory limit for container '{c_name}' sized above its peak usage (OOMKilled)")

    report.section("Conditions")
    for cond in status.get("conditions") or []:
        report.line(f"{cond.get('type')}: {cond.get('status')}", 2)
        if cond.get("status") != "False":
            continue
        if cond.get("type") == "PodScheduled":
            report.critical(f"Pod not scheduled: {cond.get('message') or ''}".rstrip(), subject=ref, inline=True, indent=4)
        elif cond.get("type") == "Ready":
            report.warning(f"Pod not ready: {cond.get('message') or ''}".rstrip(), subject=ref, inline=True, indent=4)

    for c_name, res in limits_by_container.items():
        if res["cpu_limit"] == 0:
            report.info(f"Container '{c_name}' has no CPU limit set", subject=ref)
        if res["mem_limit"] == 0:
            report.info(f"Container '{c_name}' has no memory limit set", subject=ref)

    report.section("Events")
    try:
        events = await client.get_events_for_object(namespace, name)
    except Exception as e:
        report.unavailable("events", e)
    else:
        warnings = [e for e in events if e.get("type") == "Warning"]
        if warnings:
            report.warning(f"{len(warnings)} Warning events in recent history", subject=ref, inline=True)
            for event in warnings:
                count = f" (x{event['count']})" if (event.get("count") or 0) > 1 else ""
                report.line(f"- {event.get('reason')}: {event.get('message')}{count}", 4)
        else:
            report.line("No warning events", 2)

    for c_name in crashing:
        report.section(f"Recent Logs (container '{c_name}', previous instance)")
        try:
            logs = await client.get_pod_logs(namespace, name, c_name, tail_lines=CRASH_LOG_TAIL_LINES, previous=True)
        except Exception as e:
            report.unavailable("logs", e)
            continue
        if logs:
            report.extend(logs.rstrip("\n").splitlines())
        else:
            report.line("(no logs available)", 2)

    if status.get("phase") == "Pending":
        report.suggest("Check cluster capacity and node selectors/tolerations")

    logger.info(f"Pod diagnosis for {namespace}/{name}: {report.issue_count} issue(s)")
    return report.render()


def _desired_replicas(deployment: Dict[str, Any]) -> int:
    replicas = (deployment.get("spec") or {}).get("replicas")
    return 1 if replicas is None else replicas


async def diagnose_namespace(client: K8sClient, namespace: str) -> str:
    report = Report(f"Namespace Diagnosis: {namespace}")

    pods = await client.list_pods(namespace)
    unhealthy = [p for p in pods if not is_pod_healthy(p)]
    restarting = [p for p in pods if pod_container_summary(p)[2] > HIGH_RESTART_THRESHOLD]

    report.section("Pod Summary")
    report.line(f"Total: {len(pods)}, Unhealthy: {len(unhealthy)}, High Restarts: {len(restarting)}", 2)
    if unhealthy:
        report.critical(
            f"{len(unhealthy)} unhealthy pods",
            subject=ResourceRef("Namespace", namespace),
            action="Use diagnose_pod on each unhealthy pod",
            inline=True,
        )
        for pod in unhealthy:
            report.line(f"- {name_of(pod)}: {pod_phase_reason(pod)} (restarts: {pod_container_summary(pod)[2]})", 4)
    if restarting:
        report.warning(
            f"{len(restarting)} pods with >{HIGH_RESTART_THRESHOLD} restarts", subject=ResourceRef("Namespace", namespace), inline=True
        )
        for pod in restarting:
            report.line(f"- {name_of(pod)}: {pod_container_summary(pod)[2]} restarts", 4)

    report.section("Deployments")
    try:
        deployments = await client.list_deployments(namespace)
    except Exception as e:
        report.unavailable("deployments", e)
    else:
        failing = [
            d for d in deployments if ((d.get("status") or {}).get("availableReplicas") or 0) < _desired_replicas(d)
        ]
        report.line(f"Total: {len(deployments)}, With unavailable replicas: {len(failing)}", 2)
        if failing:
            report.warning(f"{len(failing)} deployments with unavailable replicas", inline=True)
            for d in failing:
                available = (d.get("status") or {}).get("availableReplicas") or 0
                report.line(f"- {name_of(d)}: {available}/{_desired_replicas(d)} available", 4)

    report.section("Events")
    try:
        events = await client.list_events(namespace)
    except Exception as e:
        report.unavailable("events", e)
    else:
        warnings = recent_warnings(events)
        if warnings:
            report.warning(f"{len(warnings)} warning events in the last hour", inline=True)
        else:
            report.line("No warning events in the last hour", 2)

    report.section("Persistent Volume Claims")
    try:
        pvcs = await client.list_pvcs(namespace)
    except Exception as e:
        report.unavailable("persistent volume claims", e)
    else:
        unbound = [p for p in pvcs if (p.get("status") or {}).get("phase") != "Bound"]
        if unbound:
            report.warning(f"{len(unbound)} PVCs not bound", action="Check storage classes and PV availability", inline=True)
            for pvc in unbound:
                report.line(f"- {name_of(pvc)}: {(pvc.get('status') or {}).get('phase') or 'Unknown'}", 4)
        else:
            report.line(f"All {len(pvcs)} PVCs bound", 2)

    report.section("Overall Assessment")
    report.line(report.verdict("Namespace appears healthy. No issues found."), 2)

    logger.info(f"Namespace diagnosis for {namespace}: {report.issue_count} issue(s)")
    return report.render()


async def find_unhealthy_pods(client: K8sClient, namespace: str = "") -> str:
    namespace = normalize_namespace(namespace)
    report = Report(f"Unhealthy Pods (namespace: {display_namespace(namespace)})")

    pods = await client.list_pods(namespace)
    rows = []
    for pod in pods:
        if is_pod_healthy(pod):
            continue
        rows.append(
            [
                name_of(pod),
                namespace_of(pod),
                pod_phase_reason(pod),
                pod_container_summary(pod)[2],
                format_age((pod.get("metadata") or {}).get("creationTimestamp")),
                (pod.get("spec") or {}).get("nodeName") or "<none>",
            ]
        )

    if not rows:
        report.line("No unhealthy pods found.")
    else:
        report.table(["NAME", "NAMESPACE", "STATUS", "RESTARTS", "AGE", "NODE"], rows, indent=0)
        report.line("")
        report.line(f"{len(rows)} unhealthy pods out of {len(pods)} total")
    return report.render(include_findings=False)


async def check_resource_quotas(client: K8sClient, namespace: str = "") -> str:
    """Used against hard for every quota; usage at or above the warning percentage is flagged."""
    namespace = normalize_namespace(namespace)
    report = Report("Resource Quota Usage")

    if namespace:
        namespaces = [namespace]
    else:
        namespaces = [name_of(ns) for ns in await client.list_namespaces()]

    total = 0
    for ns in namespaces:
        try:
            quotas = await client.list_resource_quotas(ns)
        except Exception as e:
            report.unavailable(f"resource quotas in {ns}", e, 0)
            continue

        for quota in quotas:
            total += 1
            status = quota.get("status") or {}
            used = status.get("used") or {}
            rows = []
            for resource, hard in (status.get("hard") or {}).items():
                pct = percent(parse_quantity(used.get(resource, "0")), parse_quantity(hard))
                pct_text = f"{pct:.1f}%"
                if pct >= QUOTA_WARNING_PERCENT:
                    pct_text += " [WARNING]"
                    report.warning(
                        f"Quota '{name_of(quota)}' in {ns}: {resource} at {pct:.1f}% ({used.get(resource, '0')}/{hard})",
                        subject=ResourceRef.from_resource("ResourceQuota", quota),
                    )
                rows.append([resource, used.get(resource, "0"), hard, pct_text])
            report.line(f"Namespace: {ns}, Quota: {name_of(quota)}")
            report.table(["RESOURCE", "USED", "HARD", "USAGE %"], rows)
            report.line("")

    if total == 0:
        report.line("No resource quotas found.")
    else:
        report.line(f"Total: {total} quotas checked, {report.issue_count} warnings")
    return report.render()
