import pytest
from unittest.mock import AsyncMock, Mock

from kube_doctor.diagnostics import check_dns_health
from kube_doctor.diagnostics.dns import COREDNS_STRATEGIES, discover_coredns_pods, scan_log_patterns


@pytest.fixture
def coredns_pods(make_pod):
    return [
        make_pod("coredns-abc", namespace="kube-system", labels={"k8s-app": "kube-dns"}),
        make_pod("coredns-def", namespace="kube-system", labels={"k8s-app": "kube-dns"}),
    ]


class TestDiscovery:

    @pytest.mark.asyncio
    async def test_falls_through_to_name_prefix(self, make_pod):
        pods = [make_pod("coredns-xyz", namespace="kube-system"), make_pod("metrics-server", namespace="kube-system")]
        client = Mock()

        async def list_pods(namespace, label_selector=None):
            return [] if label_selector else pods

        client.list_pods = AsyncMock(side_effect=list_pods)

        strategy, found = await discover_coredns_pods(client)

        assert strategy is COREDNS_STRATEGIES[-1]
        assert [p["metadata"]["name"] for p in found] == ["coredns-xyz"]
        assert client.list_pods.await_count == len(COREDNS_STRATEGIES)

    def test_scan_counts_one_hit_per_line(self):
        logs = "\n".join(
            [
                "[ERROR] plugin/errors: 2 example.com. A: read udp: i/o timeout",
                "[INFO] 10.0.0.1 - SERVFAIL",
                "[INFO] 10.0.0.1 - SERVFAIL SERVFAIL",
                "[INFO] ok",
            ]
        )
        counts = {c.pattern: c.count for c in scan_log_patterns(logs)}
        assert counts["SERVFAIL"] == 2
        assert counts["i/o timeout"] == 1
        assert counts["ERROR"] == 1
        assert counts["NXDOMAIN"] == 0


class TestCheckDnsHealth:

    @pytest.mark.asyncio
    async def test_no_coredns(self, mock_client):
        client = mock_client()

        result = await check_dns_health(client)

        assert result.count("[CRITICAL]") == 1
        assert "[CRITICAL] No CoreDNS pods found in kube-system namespace" in result
        assert "Pods running: 0" in result
        client.get_pod_logs.assert_not_called()

    @pytest.mark.asyncio
    async def test_healthy_coredns(self, mock_client, make_service, coredns_pods):
        client = mock_client(
            list_pods=coredns_pods,
            get_service=make_service("kube-dns", namespace="kube-system"),
            get_pod_logs="[INFO] plugin/reload: Running configuration\n",
        )

        result = await check_dns_health(client)

        assert "Discovered by: label k8s-app=kube-dns" in result
        assert "Service: kube-dns (ClusterIP: 10.0.0.10)" in result
        assert "Pods running: 2/2" in result
        assert "CoreDNS is healthy, no error patterns detected." in result
        assert "FINDINGS:\n  No issues found." in result

    @pytest.mark.asyncio
    async def test_servfail_and_upstream_errors(self, mock_client, make_service, coredns_pods):
        logs = "\n".join(["[ERROR] SERVFAIL upstream"] * 6 + ["dial tcp 8.8.8.8:53: i/o timeout"])
        client = mock_client(
            list_pods=coredns_pods,
            get_service=make_service("kube-dns", namespace="kube-system"),
            get_pod_logs=logs,
        )

        result = await check_dns_health(client)

        assert "[WARNING] Elevated SERVFAIL count: 12 - some DNS queries are failing" in result
        assert "[WARNING] Upstream DNS connectivity issues: 2 'i/o timeout' errors" in result
        assert "Total error patterns in logs:" in result

    @pytest.mark.asyncio
    async def test_single_replica_crashlooping(self, mock_client, make_pod):
        pod = make_pod("coredns-abc", namespace="kube-system", waiting_reason="CrashLoopBackOff", restarts=9)
        client = mock_client(list_pods=[pod])

        result = await check_dns_health(client)

        assert "[WARNING] CoreDNS service 'kube-dns' not found in kube-system" in result
        assert "[CRITICAL] CoreDNS container 'main' in pod 'coredns-abc' is in CrashLoopBackOff" in result
        assert "[WARNING] CoreDNS pod 'coredns-abc' has 9 restarts" in result
        assert "Only 1 CoreDNS pod running - no DNS redundancy." in result
