import pytest

from kube_doctor.diagnostics import analyze_service_connectivity, analyze_service_logs, diagnose_service


def make_deployment(name, match_labels, namespace="default", replicas=2, available=2):
    return {
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"replicas": replicas, "selector": {"matchLabels": match_labels}},
        "status": {"availableReplicas": available},
    }


class TestDiagnoseService:

    @pytest.mark.asyncio
    async def test_service_without_selector(self, mock_client, make_service, make_endpoints):
        client = mock_client(get_service=make_service("external-db"), get_endpoints=make_endpoints(ready=["x"]))

        result = await diagnose_service(client, "default", "external-db")

        assert "--- Backing Pods ---\n  N/A — no selector" in result
        client.list_pods.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_service(self, mock_client):
        client = mock_client()

        result = await diagnose_service(client, "default", "ghost")

        assert "[CRITICAL] Service 'default/ghost' not found" in result
        assert "Verify the service name and namespace" in result
        client.get_endpoints.assert_not_called()

    @pytest.mark.asyncio
    async def test_healthy_service_with_exposure(self, mock_client, make_service, make_endpoints, make_pod, make_ingress):
        client = mock_client(
            get_service=make_service("web", selector={"app": "web"}),
            get_endpoints=make_endpoints(ready=["web-1", "web-2"]),
            list_pods=[make_pod("web-1", labels={"app": "web"}), make_pod("web-2", labels={"app": "web"})],
            list_ingresses=[make_ingress("web", "www.example.com", [("/", "web", 80)])],
        )

        result = await diagnose_service(client, "default", "web")

        assert "Total: 2, Ready: 2, NotReady: 0" in result
        assert "[OK] All endpoints ready" in result
        assert "Ingress 'web': www.example.com/" in result
        assert "No network policies in namespace (all traffic allowed)" in result
        assert "Service appears healthy. All endpoints ready, pods running." in result
        assert "SERVICE CONTEXT:" in result
        assert "ing_web -->|/| svc_web" in result

    @pytest.mark.asyncio
    async def test_policy_match_uses_service_selector(self, mock_client, make_service, make_endpoints):
        policies = [
            {"metadata": {"name": "web-only"}, "spec": {"podSelector": {"matchLabels": {"app": "web"}}}},
            {"metadata": {"name": "db-only"}, "spec": {"podSelector": {"matchLabels": {"app": "db"}}}},
        ]
        client = mock_client(
            get_service=make_service("web", selector={"app": "web", "tier": "fe"}),
            get_endpoints=make_endpoints(ready=["web-1"]),
            list_network_policies=policies,
        )

        result = await diagnose_service(client, "default", "web")

        assert "Policy 'web-only' applies to this service's pods" in result
        assert "db-only" not in result
        assert 'np_web_only{"NetPol: web-only"}' in result

    @pytest.mark.asyncio
    async def test_warning_events_become_findings(self, mock_client, make_service, make_endpoints):
        events = [
            {"type": "Warning", "reason": "FailedToUpdateEndpoint", "message": "conflict", "count": 3},
            {"type": "Normal", "reason": "Updated", "message": "ok"},
        ]
        client = mock_client(
            get_service=make_service("web"),
            get_endpoints=make_endpoints(ready=["x"]),
            get_events_for_object=events,
        )

        result = await diagnose_service(client, "default", "web")

        assert "[WARNING] FailedToUpdateEndpoint: conflict (x3)" in result
        assert "  Updated: ok" in result


class TestServiceConnectivity:

    @pytest.mark.asyncio
    async def test_requires_names(self, mock_client):
        with pytest.raises(ValueError):
            await analyze_service_connectivity(mock_client(), "", "web")

    @pytest.mark.asyncio
    async def test_no_pods_match_selector(self, mock_client, make_service):
        client = mock_client(get_service=make_service("web", selector={"app": "web"}), get_endpoints={"subsets": []})

        result = await analyze_service_connectivity(client, "default", "web")

        assert "--- Check 1: Service Exists ---" in result
        assert "[CRITICAL] No pods match selector app=web - service cannot route traffic" in result
        assert "[CRITICAL] No endpoints - service has no backends to route to" in result
        assert "Skipped - no matched pods to validate against." in result
        assert "style svc_web fill:#ffcccc" in result

    @pytest.mark.asyncio
    async def test_target_port_not_declared(self, mock_client, make_service, make_endpoints, make_pod):
        pod = make_pod("web-1", labels={"app": "web"})
        pod["spec"]["containers"][0]["ports"] = [{"containerPort": 9090}]
        client = mock_client(
            get_service=make_service("web", selector={"app": "web"}, target_port=8080),
            get_endpoints=make_endpoints(ready=["web-1"]),
            list_pods=[pod],
        )

        result = await analyze_service_connectivity(client, "default", "web")

        assert "[WARNING] Service port 80/TCP targets port 8080, but no container declares this port" in result
        assert "[OK] All 1 endpoints are ready" in result

    @pytest.mark.asyncio
    async def test_deny_all_policy_flagged(self, mock_client, make_service, make_endpoints, make_pod):
        policy = {
            "metadata": {"name": "deny-web", "namespace": "default"},
            "spec": {"podSelector": {"matchLabels": {"app": "web"}}, "policyTypes": ["Ingress"]},
        }
        client = mock_client(
            get_service=make_service("web", selector={"app": "web"}),
            get_endpoints=make_endpoints(ready=["web-1"]),
            list_pods=[make_pod("web-1", labels={"app": "web"})],
            list_network_policies=[policy],
        )

        result = await analyze_service_connectivity(client, "default", "web")

        assert "Policy 'deny-web' affects service pods" in result
        assert "[WARNING] Policy 'deny-web' denies all ingress - may block traffic to this service" in result
        assert "np_deny_web -.->|restricts| pod_web_1" in result

    @pytest.mark.asyncio
    async def test_diagram_declares_service_exposed_by_ingress(
        self, mock_client, make_service, make_endpoints, make_pod, make_ingress
    ):
        client = mock_client(
            get_service=make_service("web", selector={"app": "web"}),
            get_endpoints=make_endpoints(ready=["web-1"]),
            list_pods=[make_pod("web-1", labels={"app": "web"})],
            list_ingresses=[make_ingress("web-ing", "www.example.com", [("/", "web", 80)])],
        )

        result = await analyze_service_connectivity(client, "default", "web")
        diagram = result[result.index("CONNECTIVITY DIAGRAM:"):]

        assert 'svc_web("Service: web<br/>' in diagram
        assert diagram.index('svc_web("Service: web') < diagram.index("ing_web_ing -->|/| svc_web")
        assert diagram.index("ing_web_ing -->|/| svc_web") < diagram.index("svc_web --> pod_web_1")
        assert "style svc_web fill:#ccffcc" in diagram


class TestServiceLogs:

    @pytest.mark.asyncio
    async def test_counts_terms_and_pods(self, mock_client, make_pod):
        logs = "\n".join(["INFO started", "ERROR db down", "Connection refused", "error again"])
        client = mock_client(
            get_deployment=make_deployment("api", {"app": "api"}),
            list_pods=[make_pod("api-1", labels={"app": "api"}), make_pod("other", labels={"app": "x"})],
            get_pod_logs=logs,
        )

        result = await analyze_service_logs(client, "default", "api")

        assert "Pods: 1, Lines per pod: 200" in result
        assert "--- Found 3 matching entries ---" in result
        assert f"{'error':<20} 2" in result
        assert f"{'refused':<20} 1" in result
        assert "[api-1] ERROR db down" in result
        assert "FINDINGS" not in result

    @pytest.mark.asyncio
    async def test_no_matches(self, mock_client, make_pod):
        client = mock_client(
            get_deployment=make_deployment("api", {"app": "api"}),
            list_pods=[make_pod("api-1", labels={"app": "api"})],
            get_pod_logs="all good\n",
        )

        result = await analyze_service_logs(client, "default", "api", pattern="panic")

        assert "No matching log entries found." in result

    @pytest.mark.asyncio
    async def test_invalid_pattern(self, mock_client):
        with pytest.raises(ValueError):
            await analyze_service_logs(mock_client(), "default", "api", pattern="(unclosed")

    @pytest.mark.asyncio
    async def test_missing_deployment(self, mock_client):
        result = await analyze_service_logs(mock_client(), "default", "api")
        assert "[CRITICAL] Deployment 'api' not found in namespace 'default'" in result
