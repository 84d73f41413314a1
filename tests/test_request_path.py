import pytest

from kube_doctor.diagnostics import diagnose_request_path
from kube_doctor.models import MetricsSnapshot, ResourceUsage


@pytest.fixture
def broken_backend(mock_client, make_pod, make_service, make_endpoints, make_ingress):
    """api.example.com routed to a service whose two pods are failing readiness."""
    ingress = make_ingress("api", "api.example.com", [("/", "api-svc", 80)])
    service = make_service("api-svc", selector={"app": "api"})
    pods = [
        make_pod("api-1", labels={"app": "api"}, ready=False),
        make_pod("api-2", labels={"app": "api"}, ready=False),
    ]
    return mock_client(
        list_ingresses=[ingress],
        get_service=service,
        get_endpoints=make_endpoints(not_ready=["api-1", "api-2"]),
        list_pods=pods,
    )


class TestDiagnoseRequestPath:

    @pytest.mark.asyncio
    async def test_no_ready_endpoints(self, broken_backend):
        result = await diagnose_request_path(broken_backend, "api.example.com", "/")

        assert result.startswith("=== Request Path: https://api.example.com/ ===")
        assert "[1] INGRESS" in result
        assert "[2] SERVICE" in result
        assert "[3] ENDPOINTS" in result
        assert "[4] RESOURCE USAGE" in result
        assert "Ready: 0/2 (0 ready, 2 not ready)" in result
        assert (
            "[CRITICAL] Service has no ready endpoints (0 ready, 2 not ready) - requests will fail with 502/503"
            in result
        )
        assert "(metrics-server not available)" in result

    @pytest.mark.asyncio
    async def test_diagrams_show_failing_service(self, broken_backend):
        result = await diagnose_request_path(broken_backend, "api.example.com", "/")

        assert "TOPOLOGY:\n```mermaid\nflowchart TB" in result
        assert "style svc fill:#ffcccc" in result
        assert "REQUEST FLOW:\n```mermaid\nsequenceDiagram" in result
        assert "svc-->>ing: NO ENDPOINTS" in result
        assert "Note over ing: 502/503 - no backends" in result

    @pytest.mark.asyncio
    async def test_findings_block_lists_critical_first(self, broken_backend):
        result = await diagnose_request_path(broken_backend, "api.example.com", "/")

        findings = result.split("FINDINGS:")[1].split("SUGGESTED ACTIONS:")[0]
        lines = [line.strip() for line in findings.strip().splitlines()]
        severities = [line.split("]")[0] + "]" for line in lines]
        assert severities == sorted(severities, key=["[CRITICAL]", "[WARNING]", "[INFO]"].index)
        assert "[WARNING] No TLS configured for this host" in lines

    @pytest.mark.asyncio
    async def test_same_snapshot_same_output(self, broken_backend):
        first = await diagnose_request_path(broken_backend, "api.example.com", "/")
        second = await diagnose_request_path(broken_backend, "api.example.com", "/")
        assert first == second

    @pytest.mark.asyncio
    async def test_no_matching_ingress(self, mock_client, make_ingress):
        client = mock_client(list_ingresses=[make_ingress("web", "web.example.com", [("/", "web", 80)])])

        result = await diagnose_request_path(client, "api.example.com", "/v1")

        assert "[CRITICAL] No Ingress found for api.example.com/v1" in result
        assert "Create an Ingress resource with host: api.example.com and path: /v1" in result
        assert "[2] SERVICE" not in result
        client.get_service.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_backend_service(self, mock_client, make_ingress):
        client = mock_client(list_ingresses=[make_ingress("api", "api.example.com", [("/", "gone", 80)])])

        result = await diagnose_request_path(client, "api.example.com")

        assert "[CRITICAL] Backend service 'gone' not found in namespace 'default'" in result
        assert "style svc fill:#ffcccc" in result

    @pytest.mark.asyncio
    async def test_service_without_selector(self, mock_client, make_ingress, make_service, make_endpoints):
        client = mock_client(
            list_ingresses=[make_ingress("api", "api.example.com", [("/", "ext", 80)], tls_hosts=["api.example.com"])],
            get_service=make_service("ext"),
            get_endpoints=make_endpoints(ready=["manual"]),
        )

        result = await diagnose_request_path(client, "api.example.com")

        assert "PODS: N/A — no selector" in result
        assert "TLS: api-tls" in result
        client.list_pods.assert_not_called()

    @pytest.mark.asyncio
    async def test_healthy_path_with_metrics(self, mock_client, make_ingress, make_service, make_endpoints, make_pod):
        pod = make_pod("api-1", labels={"app": "api"}, limits={"cpu": "1", "memory": "1Gi"})
        metrics = MetricsSnapshot(
            available=True,
            usage={"default/api-1": ResourceUsage(100, 100 * 1024**2)},
            containers={"default/api-1": {"main": ResourceUsage(100, 100 * 1024**2)}},
        )
        client = mock_client(
            list_ingresses=[make_ingress("api", "api.example.com", [("/", "api-svc", 80)], tls_hosts=["api.example.com"])],
            get_service=make_service("api-svc", selector={"app": "api"}),
            get_endpoints=make_endpoints(ready=["api-1"]),
            list_pods=[pod],
            get_pod_metrics=metrics,
        )

        result = await diagnose_request_path(client, "api.example.com", "/")

        assert "Request path appears healthy. All layers operational." in result
        assert "FINDINGS:\n  No issues found." in result
        assert "api-1/main: CPU 100m/1000m (10%)" in result
        assert "svc->>pod: Forward to pod" in result
