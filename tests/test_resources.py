import pytest

from kube_doctor.diagnostics import analyze_node_capacity, analyze_resource_efficiency, analyze_resource_usage
from kube_doctor.diagnostics.resources import PodUsage, UsageCategory, categorize, node_capacities
from kube_doctor.models import MetricsSnapshot, ResourceUsage

GI = 1024**3
MI = 1024**2


def pod_metrics(*entries):
    """``(pod name, cpu millicores, memory bytes)`` entries in the default namespace."""
    return MetricsSnapshot(
        available=True,
        usage={f"default/{name}": ResourceUsage(cpu, mem) for name, cpu, mem in entries},
        containers={f"default/{name}": {"main": ResourceUsage(cpu, mem)} for name, cpu, mem in entries},
    )


def make_node(name, cpu="2", memory="4Gi", pods="110", ready=True, pressure=()):
    conditions = [{"type": "Ready", "status": "True" if ready else "False"}]
    conditions.extend({"type": p, "status": "True"} for p in pressure)
    return {
        "metadata": {"name": name},
        "status": {"allocatable": {"cpu": cpu, "memory": memory, "pods": pods}, "conditions": conditions},
    }


class TestCategorize:

    def test_critical_cpu(self):
        usage = PodUsage(
            "web-1", "default", cpu_request=500, cpu_limit=1000, mem_request=256 * MI, mem_limit=GI,
            cpu_usage=950, mem_usage=512 * MI, has_metrics=True,
        )
        assert categorize(usage) == UsageCategory.CRITICAL

    def test_warning_memory(self):
        usage = PodUsage(
            "web-1", "default", cpu_request=500, cpu_limit=1000, mem_request=256 * MI, mem_limit=GI,
            cpu_usage=100, mem_usage=800 * MI, has_metrics=True,
        )
        assert categorize(usage) == UsageCategory.WARNING

    def test_exactly_at_threshold_is_not_escalated(self):
        usage = PodUsage(
            "web-1", "default", cpu_request=1000, cpu_limit=1000, mem_request=GI, mem_limit=GI,
            cpu_usage=900, mem_usage=0, has_metrics=True,
        )
        assert categorize(usage) == UsageCategory.WARNING

    def test_overprovisioned(self):
        usage = PodUsage(
            "web-1", "default", cpu_request=1000, cpu_limit=2000, mem_request=GI, mem_limit=2 * GI,
            cpu_usage=100, mem_usage=100 * MI, has_metrics=True,
        )
        assert categorize(usage) == UsageCategory.OVERPROVISIONED

    def test_missing_everything(self):
        assert categorize(PodUsage("web-1", "default", cpu_usage=100, has_metrics=True)) == UsageCategory.MISSING_LIMITS

    def test_without_metrics_only_static_categories(self):
        usage = PodUsage("web-1", "default", cpu_request=100, cpu_limit=200, mem_request=MI, mem_limit=2 * MI)
        assert categorize(usage) == UsageCategory.OK


class TestAnalyzeResourceUsage:

    @pytest.mark.asyncio
    async def test_hot_pod_is_critical(self, mock_client, make_pod):
        pod = make_pod(
            "web-1",
            limits={"cpu": "1", "memory": "1Gi"},
            requests={"cpu": "500m", "memory": "256Mi"},
        )
        client = mock_client(list_pods=[pod], get_pod_metrics=pod_metrics(("web-1", 950, 512 * MI)))

        result = await analyze_resource_usage(client, "default")

        assert "CRITICAL (>90% of limit): 1" in result
        assert "[CRITICAL] Pod 'web-1' CPU usage at 95.0% of limit (950m/1000m)" in result
        assert "memory usage" not in result.split("FINDINGS:")[1]
        assert "RESOURCE USAGE CHART:" in result
        assert "bar [95.0]" in result

    @pytest.mark.asyncio
    async def test_metrics_unavailable_never_reports_zero_usage(self, mock_client, make_pod):
        pod = make_pod("web-1", limits={"cpu": "1", "memory": "1Gi"}, requests={"cpu": "500m", "memory": "256Mi"})
        client = mock_client(list_pods=[pod])

        result = await analyze_resource_usage(client, "default")

        assert "(metrics-server not available - usage data unavailable)" in result
        assert "N/A" in result
        assert "0.0%" not in result
        assert "RESOURCE USAGE CHART" not in result

    @pytest.mark.asyncio
    async def test_completed_pods_skipped(self, mock_client, make_pod):
        client = mock_client(list_pods=[make_pod("job-1", phase="Succeeded"), make_pod("web-1")])

        result = await analyze_resource_usage(client, "default")

        assert "Active Pods Analyzed: 1" in result
        assert "[WARNING] Pod 'web-1' is missing resource limits/requests" in result
        assert "job-1" not in result


class TestNodeCapacity:

    def test_requests_summed_per_node(self, make_pod):
        nodes = [make_node("node-1"), make_node("node-2")]
        pods = [
            make_pod("a", requests={"cpu": "500m", "memory": "1Gi"}, node="node-1"),
            make_pod("b", requests={"cpu": "250m"}, node="node-1"),
            make_pod("c", requests={"cpu": "1"}, node="node-1", phase="Failed"),
            make_pod("d", requests={"cpu": "1"}, node="node-2"),
        ]
        capacities = {c.name: c for c in node_capacities(nodes, pods)}

        assert capacities["node-1"].cpu_requests == 750
        assert capacities["node-1"].mem_requests == GI
        assert capacities["node-1"].pod_count == 2
        assert capacities["node-1"].cpu_request_pct == 37.5
        assert capacities["node-2"].cpu_headroom == 1000
        assert capacities["node-1"].has_metrics is False

    @pytest.mark.asyncio
    async def test_overcommitted_and_not_ready(self, mock_client, make_pod):
        client = mock_client(
            list_nodes=[make_node("node-1", cpu="1"), make_node("node-2", ready=False, pressure=("DiskPressure",))],
            list_pods=[make_pod("a", requests={"cpu": "1500m"}, node="node-1")],
        )

        result = await analyze_node_capacity(client)

        assert "(metrics-server not available - actual usage unavailable)" in result
        assert "[CRITICAL] Node 'node-1' CPU requests at 150.0% of allocatable - scheduling may fail" in result
        assert "[WARNING] Node 'node-1' is overcommitted on CPU by 500m" in result
        assert "[CRITICAL] Node 'node-2' is NotReady" in result
        assert "[WARNING] Node 'node-2' has DiskPressure" in result
        assert 'y-axis "CPU Request Utilization %" 0 --> 120' in result


class TestResourceEfficiency:

    @pytest.mark.asyncio
    async def test_low_efficiency_and_missing_requests(self, mock_client, make_pod):
        pods = [
            make_pod("idle", requests={"cpu": "1", "memory": "1Gi"}, limits={"cpu": "2", "memory": "2Gi"}),
            make_pod("bare"),
        ]
        client = mock_client(
            list_pods=pods,
            get_pod_metrics=pod_metrics(("idle", 100, 100 * MI), ("bare", 10, 10 * MI)),
        )

        result = await analyze_resource_efficiency(client, "default")

        assert "Total CPU Requested: 1000m" in result
        assert "Total CPU Used: 110m" in result
        assert "Right-Sizing Opportunities" in result
        assert "[WARNING] 1 pods have no resource requests set: default/bare" in result
        assert "[WARNING] 1 pods have no resource limits set: default/bare" in result
        assert "[WARNING] Overall CPU efficiency is only 11.0% - significant overprovisioning" in result

    @pytest.mark.asyncio
    async def test_without_metrics(self, mock_client, make_pod):
        client = mock_client(list_pods=[make_pod("a", requests={"cpu": "1"}, limits={"cpu": "2"})])

        result = await analyze_resource_efficiency(client)

        assert "Waste calculations unavailable without metrics-server." in result
        assert "Total CPU Requested: 1000m, Limits: 2000m" in result
        assert "Right-Sizing Opportunities" not in result
        assert "efficiency is only" not in result
