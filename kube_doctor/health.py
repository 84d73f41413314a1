import re
from typing import Any, Dict, Optional, Tuple

from .models import EndpointHealth, HealthVerdict, Severity

HIGH_RESTART_THRESHOLD = 5
CRITICAL_PERCENT = 90
WARNING_PERCENT = 70
OVERPROVISIONED_PERCENT = 30
CLUSTER_UTILIZATION_WARNING_PERCENT = 85
NODE_REQUEST_WARNING_PERCENT = 80
LOW_EFFICIENCY_PERCENT = 30
MODERATE_EFFICIENCY_PERCENT = 50
QUOTA_WARNING_PERCENT = 80

PRESSURE_CONDITIONS = ("MemoryPressure", "DiskPressure", "PIDPressure")

_BINARY_SUFFIXES = {
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "Pi": 1024**5,
    "Ei": 1024**6,
}
_DECIMAL_SUFFIXES = {
    "n": 10**-9,
    "u": 10**-6,
    "m": 10**-3,
    "k": 10**3,
    "M": 10**6,
    "G": 10**9,
    "T": 10**12,
    "P": 10**15,
    "E": 10**18,
}
_QUANTITY_RE = re.compile(r"^([+-]?[0-9.]+(?:[eE][+-]?[0-9]+)?)([a-zA-Z]*)$")


def is_pod_healthy(pod: Dict[str, Any]) -> bool:
    status = pod.get("status") or {}
    phase = status.get("phase")

    if phase == "Running":
        for cs in status.get("containerStatuses") or []:
            if not cs.get("ready"):
                return False
            if (cs.get("state") or {}).get("waiting") is not None:
                return False
        return True

    return phase == "Succeeded"


def pod_phase_reason(pod: Dict[str, Any]) -> str:
    """Most specific status string for a pod.

    Precedence: container waiting/terminated reason, init container reason
    (prefixed ``Init:``), pod-level reason, then the bare phase.
    """
    status = pod.get("status") or {}

    for cs in status.get("containerStatuses") or []:
        state = cs.get("state") or {}
        waiting = state.get("waiting") or {}
        if waiting.get("reason"):
            return waiting["reason"]
        terminated = state.get("terminated") or {}
        if terminated.get("reason"):
            return terminated["reason"]

    for cs in status.get("initContainerStatuses") or []:
        state = cs.get("state") or {}
        waiting = state.get("waiting") or {}
        if waiting.get("reason"):
            return f"Init:{waiting['reason']}"
        terminated = state.get("terminated") or {}
        if terminated.get("reason"):
            return f"Init:{terminated['reason']}"

    if status.get("reason"):
        return status["reason"]

    return status.get("phase") or "Unknown"


def pod_container_summary(pod: Dict[str, Any]) -> Tuple[int, int, int]:
    """Return ``(ready, total, restarts)`` for a pod."""
    total = len((pod.get("spec") or {}).get("containers") or [])
    ready = 0
    restarts = 0
    for cs in (pod.get("status") or {}).get("containerStatuses") or []:
        if cs.get("ready"):
            ready += 1
        restarts += cs.get("restartCount") or 0
    return ready, total, restarts


def pod_health_verdict(pod: Dict[str, Any]) -> HealthVerdict:
    if not is_pod_healthy(pod):
        return HealthVerdict.CRITICAL
    _, _, restarts = pod_container_summary(pod)
    if restarts > HIGH_RESTART_THRESHOLD:
        return HealthVerdict.DEGRADED
    return HealthVerdict.HEALTHY


def node_status(node: Dict[str, Any]) -> str:
    for cond in (node.get("status") or {}).get("conditions") or []:
        if cond.get("type") == "Ready":
            return "Ready" if cond.get("status") == "True" else "NotReady"
    return "Unknown"


def node_pressure_conditions(node: Dict[str, Any]) -> list:
    return [
        cond.get("type")
        for cond in (node.get("status") or {}).get("conditions") or []
        if cond.get("type") in PRESSURE_CONDITIONS and cond.get("status") == "True"
    ]


def node_health_verdict(node: Dict[str, Any]) -> HealthVerdict:
    status = node_status(node)
    if status == "Unknown":
        return HealthVerdict.UNKNOWN
    if status == "NotReady":
        return HealthVerdict.CRITICAL
    if node_pressure_conditions(node):
        return HealthVerdict.DEGRADED
    return HealthVerdict.HEALTHY


def endpoint_verdict(health: Optional[EndpointHealth]) -> HealthVerdict:
    if health is None:
        return HealthVerdict.UNKNOWN
    if health.ready_count == 0:
        return HealthVerdict.CRITICAL
    if health.not_ready_count > 0:
        return HealthVerdict.DEGRADED
    return HealthVerdict.HEALTHY


def is_pod_active(pod: Dict[str, Any]) -> bool:
    return (pod.get("status") or {}).get("phase") not in ("Succeeded", "Failed")


def parse_quantity(quantity: Any) -> float:
    if quantity is None:
        return 0.0
    if isinstance(quantity, (int, float)):
        return float(quantity)

    match = _QUANTITY_RE.match(str(quantity).strip())
    if not match:
        raise ValueError(f"Invalid resource quantity: {quantity!r}")

    number, suffix = match.groups()
    value = float(number)
    if not suffix:
        return value
    if suffix in _BINARY_SUFFIXES:
        return value * _BINARY_SUFFIXES[suffix]
    if suffix in _DECIMAL_SUFFIXES:
        return value * _DECIMAL_SUFFIXES[suffix]
    raise ValueError(f"Unknown resource quantity suffix: {quantity!r}")


def parse_cpu(quantity: Any) -> int:
    """CPU quantity (``"250m"``, ``"1"``, ``"1500000n"``) to millicores."""
    return int(round(parse_quantity(quantity) * 1000))


def parse_memory(quantity: Any) -> int:
    """Memory quantity (``"128Mi"``, ``"1G"``) to bytes."""
    return int(round(parse_quantity(quantity)))


def format_bytes(value: int) -> str:
    if value >= 1024**3:
        return f"{value / 1024**3:.1f}Gi"
    if value >= 1024**2:
        return f"{value / 1024**2:.1f}Mi"
    if value >= 1024:
        return f"{value / 1024:.1f}Ki"
    return f"{value}B"


def percent(part: float, whole: float) -> float:
    if whole <= 0:
        return 0.0
    return part / whole * 100


def container_resources(container: Dict[str, Any]) -> Dict[str, int]:
    """Requests and limits of one container as millicores / bytes (0 when unset)."""
    resources = container.get("resources") or {}
    requests = resources.get("requests") or {}
    limits = resources.get("limits") or {}
    return {
        "cpu_request": parse_cpu(requests.get("cpu")),
        "mem_request": parse_memory(requests.get("memory")),
        "cpu_limit": parse_cpu(limits.get("cpu")),
        "mem_limit": parse_memory(limits.get("memory")),
    }


def pod_resources(pod: Dict[str, Any]) -> Dict[str, int]:
    totals = {"cpu_request": 0, "mem_request": 0, "cpu_limit": 0, "mem_limit": 0}
    for container in (pod.get("spec") or {}).get("containers") or []:
        for key, value in container_resources(container).items():
            totals[key] += value
    return totals


def usage_severity(pct: float) -> Optional[Severity]:
    """Severity of a usage-vs-limit percentage, shared by every engine."""
    if pct > CRITICAL_PERCENT:
        return Severity.CRITICAL
    if pct > WARNING_PERCENT:
        return Severity.WARNING
    return None
