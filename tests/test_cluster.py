from unittest.mock import AsyncMock

import pytest
from kubernetes.client.exceptions import ApiException

from kube_doctor.diagnostics import cluster_health_overview
from kube_doctor.models import MetricsSnapshot, ResourceUsage


def make_node(name, ready=True, pressure=(), cpu="4", memory="16Gi"):
    conditions = [{"type": "Ready", "status": "True" if ready else "False"}]
    conditions.extend({"type": p, "status": "True"} for p in pressure)
    return {"metadata": {"name": name}, "status": {"capacity": {"cpu": cpu, "memory": memory}, "conditions": conditions}}


def pods_by_namespace(mapping):
    async def list_pods(namespace=None, label_selector=None):
        if namespace:
            return [p for p in mapping if p["metadata"]["namespace"] == namespace]
        return list(mapping)

    return AsyncMock(side_effect=list_pods)


class TestClusterHealthOverview:

    @pytest.mark.asyncio
    async def test_healthy_cluster(self, mock_client, make_pod):
        pods = [make_pod("web-1"), make_pod("coredns-1", namespace="kube-system")]
        client = mock_client(list_nodes=[make_node("node-1"), make_node("node-2")])
        client.list_pods = pods_by_namespace(pods)

        result = await cluster_health_overview(client)

        assert "2/2 nodes ready" in result
        assert "All 2 pods healthy across 2 namespaces" in result
        assert "All 0 services with selectors have healthy endpoints" in result
        assert "All 1 pods healthy" in result
        assert "Cluster is healthy. No issues found." in result
        assert "--- Resource Utilization ---" not in result
        assert 'subgraph cluster["Kubernetes Cluster"]' in result
        assert "style node_0 fill:#ccffcc" in result

    @pytest.mark.asyncio
    async def test_problems_across_sections(
        self, mock_client, make_pod, make_service, make_endpoints, make_ingress
    ):
        pods = [
            make_pod("web-1", namespace="shop", ready=False),
            make_pod("web-2", namespace="shop", restarts=9),
            make_pod("proxy", namespace="kube-system", waiting_reason="CrashLoopBackOff"),
        ]
        services = [
            make_service("dead", namespace="shop", selector={"app": "dead"}),
            make_service("ext", namespace="shop", svc_type="ExternalName"),
            make_service("manual", namespace="shop"),
        ]
        client = mock_client(
            list_nodes=[make_node("node-1"), make_node("node-2", ready=False), make_node("node-3", pressure=("MemoryPressure",))],
            list_services=services,
            get_endpoints=make_endpoints(),
            list_ingresses=[make_ingress("shop", "shop.example.com", [("/", "web", 80)], namespace="shop")],
        )
        client.list_pods = pods_by_namespace(pods)

        result = await cluster_health_overview(client)

        assert "[CRITICAL] Node 'node-2' is NotReady" in result
        assert "[WARNING] Node 'node-3' has MemoryPressure" in result
        assert "2/3 nodes ready" in result
        assert "[WARNING] 2 unhealthy pods cluster-wide" in result
        assert "[CRITICAL] shop/dead: 0 endpoints (DEAD)" in result
        assert "[CRITICAL] 1/1 unhealthy in kube-system" in result
        assert "- proxy" in result
        assert "internet((\"Internet\"))" in result
        assert "internet --> ing_0" in result
        assert "style node_1 fill:#ffcccc" in result
        assert "style node_2 fill:#ffffcc" in result
        client.get_endpoints.assert_called_once_with("shop", "dead")

    @pytest.mark.asyncio
    async def test_utilization_from_metrics(self, mock_client):
        metrics = MetricsSnapshot(available=True, usage={"node-1": ResourceUsage(3600, 4 * 1024**3)})
        client = mock_client(list_nodes=[make_node("node-1")], get_node_metrics=metrics)

        result = await cluster_health_overview(client)

        assert "CPU:    3600m / 4000m (90.0%)" in result
        assert "[WARNING] Cluster CPU utilization above 85%" in result
        assert "Cluster memory utilization" not in result

    @pytest.mark.asyncio
    async def test_sections_fail_independently(self, mock_client):
        client = mock_client(list_nodes=ApiException(status=403, reason="Forbidden"))

        result = await cluster_health_overview(client)

        assert "(could not fetch nodes:" in result
        assert "--- Pod Health by Namespace ---" in result
        assert "--- Overall Assessment ---" in result
        client.get_node_metrics.assert_not_called()
