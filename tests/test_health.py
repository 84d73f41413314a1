import pytest

from kube_doctor.health import (
    endpoint_verdict,
    is_pod_healthy,
    node_health_verdict,
    parse_cpu,
    parse_memory,
    pod_container_summary,
    pod_phase_reason,
    pod_resources,
    usage_severity,
)
from kube_doctor.models import EndpointAddress, EndpointHealth, HealthVerdict, ResourceRef, Severity


class TestPodHealth:

    def test_running_and_ready_is_healthy(self, make_pod):
        assert is_pod_healthy(make_pod("web-1")) is True

    def test_running_not_ready_is_unhealthy(self, make_pod):
        assert is_pod_healthy(make_pod("web-1", ready=False)) is False

    def test_running_with_waiting_container_is_unhealthy(self, make_pod):
        pod = make_pod("web-1", waiting_reason="CrashLoopBackOff")
        assert is_pod_healthy(pod) is False

    def test_succeeded_is_healthy(self, make_pod):
        assert is_pod_healthy(make_pod("job-1", phase="Succeeded", ready=False)) is True

    @pytest.mark.parametrize("phase", ["Pending", "Failed", "Unknown"])
    def test_other_phases_are_unhealthy(self, make_pod, phase):
        assert is_pod_healthy(make_pod("web-1", phase=phase)) is False

    def test_phase_reason_prefers_container_reason(self, make_pod):
        pod = make_pod("web-1", waiting_reason="ImagePullBackOff")
        assert pod_phase_reason(pod) == "ImagePullBackOff"

    def test_phase_reason_init_container(self):
        pod = {
            "status": {
                "phase": "Pending",
                "initContainerStatuses": [{"name": "init", "state": {"waiting": {"reason": "CrashLoopBackOff"}}}],
            }
        }
        assert pod_phase_reason(pod) == "Init:CrashLoopBackOff"

    def test_phase_reason_falls_back_to_phase(self):
        assert pod_phase_reason({"status": {"phase": "Pending"}}) == "Pending"
        assert pod_phase_reason({}) == "Unknown"

    def test_container_summary(self, make_pod):
        pod = make_pod("web-1", ready=False, restarts=7)
        assert pod_container_summary(pod) == (0, 1, 7)


class TestQuantities:

    @pytest.mark.parametrize(
        "value,expected",
        [("250m", 250), ("1", 1000), ("1.5", 1500), ("1500000n", 2), (None, 0), (2, 2000)],
    )
    def test_parse_cpu(self, value, expected):
        assert parse_cpu(value) == expected

    @pytest.mark.parametrize(
        "value,expected",
        [("128Mi", 128 * 1024**2), ("1Gi", 1024**3), ("1G", 10**9), ("512", 512), (None, 0)],
    )
    def test_parse_memory(self, value, expected):
        assert parse_memory(value) == expected

    def test_invalid_quantity_raises(self):
        with pytest.raises(ValueError):
            parse_memory("lots")

    def test_pod_resources_sums_containers(self, make_pod):
        pod = make_pod("web-1", limits={"cpu": "500m", "memory": "256Mi"}, requests={"cpu": "100m"})
        pod["spec"]["containers"].append(
            {"name": "sidecar", "resources": {"limits": {"cpu": "100m"}, "requests": {"memory": "64Mi"}}}
        )
        totals = pod_resources(pod)
        assert totals["cpu_limit"] == 600
        assert totals["cpu_request"] == 100
        assert totals["mem_limit"] == 256 * 1024**2
        assert totals["mem_request"] == 64 * 1024**2


class TestVerdicts:

    def _health(self, ready, not_ready):
        return EndpointHealth(
            service=ResourceRef("Service", "web", "default"),
            ready_addresses=[EndpointAddress(ip=f"10.0.0.{i}") for i in range(ready)],
            not_ready_addresses=[EndpointAddress(ip=f"10.0.1.{i}") for i in range(not_ready)],
        )

    def test_endpoint_counts_add_up(self):
        health = self._health(3, 2)
        assert health.total_endpoints == health.ready_count + health.not_ready_count == 5

    def test_endpoint_verdicts(self):
        assert endpoint_verdict(None) == HealthVerdict.UNKNOWN
        assert endpoint_verdict(self._health(0, 2)) == HealthVerdict.CRITICAL
        assert endpoint_verdict(self._health(0, 0)) == HealthVerdict.CRITICAL
        assert endpoint_verdict(self._health(1, 1)) == HealthVerdict.DEGRADED
        assert endpoint_verdict(self._health(2, 0)) == HealthVerdict.HEALTHY

    def test_node_verdicts(self):
        ready = {"status": {"conditions": [{"type": "Ready", "status": "True"}]}}
        not_ready = {"status": {"conditions": [{"type": "Ready", "status": "False"}]}}
        pressure = {
            "status": {
                "conditions": [
                    {"type": "Ready", "status": "True"},
                    {"type": "MemoryPressure", "status": "True"},
                ]
            }
        }
        assert node_health_verdict(ready) == HealthVerdict.HEALTHY
        assert node_health_verdict(not_ready) == HealthVerdict.CRITICAL
        assert node_health_verdict(pressure) == HealthVerdict.DEGRADED
        assert node_health_verdict({}) == HealthVerdict.UNKNOWN

    def test_usage_severity_thresholds_are_strict(self):
        assert usage_severity(95) == Severity.CRITICAL
        assert usage_severity(90) == Severity.WARNING
        assert usage_severity(71) == Severity.WARNING
        assert usage_severity(70) is None
