from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from kube_doctor.client import K8sClient, event_time, normalize_namespace, selector_string
from kube_doctor.config import LOG_TRUNCATION_MARKER, MAX_EVENTS, MAX_LOG_BYTES


@pytest.fixture
def k8s_client():
    api_client = Mock()
    api_client.sanitize_for_serialization.side_effect = lambda obj: obj
    return K8sClient(context="test", timeout=5, api_client=api_client)


class TestHelpers:

    @pytest.mark.parametrize("value", [None, "", "all", "ALL", "*", "  all  "])
    def test_all_namespace_spellings(self, value):
        assert normalize_namespace(value) == ""

    def test_specific_namespace_kept(self):
        assert normalize_namespace(" prod ") == "prod"

    def test_selector_string(self):
        assert selector_string({"app": "web", "tier": "fe"}) == "app=web,tier=fe"
        assert selector_string(None) == ""

    def test_event_time_fallbacks(self):
        assert event_time({"lastTimestamp": "2024-01-02T00:00:00Z"}) == datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert event_time({"eventTime": "2024-01-03T00:00:00Z"}) == datetime(2024, 1, 3, tzinfo=timezone.utc)
        assert event_time({"metadata": {"creationTimestamp": "2024-01-04T00:00:00Z"}}).day == 4
        assert event_time({}) == datetime.min.replace(tzinfo=timezone.utc)


class TestK8sClient:

    @pytest.mark.asyncio
    async def test_namespaced_and_cluster_listing(self, k8s_client):
        calls = []

        def list_namespaced_pod(namespace, **kwargs):
            calls.append(("namespaced", namespace, kwargs))
            return {"items": [{"metadata": {"name": "a"}}]}

        def list_pod_for_all_namespaces(**kwargs):
            calls.append(("cluster", None, kwargs))
            return {"items": []}

        k8s_client.core_v1 = SimpleNamespace(
            list_namespaced_pod=list_namespaced_pod, list_pod_for_all_namespaces=list_pod_for_all_namespaces
        )

        pods = await k8s_client.list_pods("prod", label_selector="app=web")
        await k8s_client.list_pods("all")

        assert [p["metadata"]["name"] for p in pods] == ["a"]
        assert calls[0][0:2] == ("namespaced", "prod")
        assert calls[0][2]["label_selector"] == "app=web"
        assert calls[0][2]["_request_timeout"] == 5
        assert "field_selector" not in calls[0][2]
        assert calls[1][0] == "cluster"

    @pytest.mark.asyncio
    async def test_events_sorted_and_capped(self, k8s_client):
        events = [
            {"reason": f"e{i}", "lastTimestamp": f"2024-01-01T00:{i // 60:02d}:{i % 60:02d}Z"}
            for i in range(MAX_EVENTS + 20)
        ]

        def list_namespaced_event(namespace, **kwargs):
            return {"items": list(events)}

        def list_event_for_all_namespaces(**kwargs):
            return {"items": []}

        k8s_client.core_v1 = SimpleNamespace(
            list_namespaced_event=list_namespaced_event, list_event_for_all_namespaces=list_event_for_all_namespaces
        )

        result = await k8s_client.list_events("default")

        assert len(result) == MAX_EVENTS
        assert result[0]["reason"] == f"e{MAX_EVENTS + 19}"

    @pytest.mark.asyncio
    async def test_logs_truncated(self, k8s_client):
        response = Mock()
        response.read.return_value = b"x" * (MAX_LOG_BYTES + 1)

        def read_namespaced_pod_log(name, namespace, **kwargs):
            assert kwargs["tail_lines"] == 100
            assert kwargs["_preload_content"] is False
            return response

        k8s_client.core_v1 = SimpleNamespace(read_namespaced_pod_log=read_namespaced_pod_log)

        logs = await k8s_client.get_pod_logs("default", "web-1", "main")

        assert logs.endswith(LOG_TRUNCATION_MARKER)
        assert len(logs) == MAX_LOG_BYTES + len(LOG_TRUNCATION_MARKER)
        response.release_conn.assert_called_once()

    @pytest.mark.asyncio
    async def test_pod_metrics(self, k8s_client):
        def list_namespaced_custom_object(group, version, namespace, plural, **kwargs):
            return {
                "items": [
                    {
                        "metadata": {"name": "web-1", "namespace": "default"},
                        "containers": [
                            {"name": "main", "usage": {"cpu": "250m", "memory": "64Mi"}},
                            {"name": "sidecar", "usage": {"cpu": "1500000n", "memory": "16Mi"}},
                        ],
                    }
                ]
            }

        k8s_client.custom_objects = SimpleNamespace(list_namespaced_custom_object=list_namespaced_custom_object)

        metrics = await k8s_client.get_pod_metrics("default")

        assert metrics.available is True
        assert metrics.pod("default", "web-1").cpu_millicores == 252
        assert metrics.container("default", "web-1", "main").memory_bytes == 64 * 1024**2

    @pytest.mark.asyncio
    async def test_metrics_unavailable(self, k8s_client):
        def list_cluster_custom_object(*args, **kwargs):
            raise RuntimeError("the server could not find the requested resource")

        k8s_client.custom_objects = SimpleNamespace(list_cluster_custom_object=list_cluster_custom_object)

        metrics = await k8s_client.get_node_metrics()

        assert metrics.available is False
        assert metrics.get("node-1") is None

    @pytest.mark.asyncio
    async def test_workload_and_storage_listers(self, k8s_client):
        def lister(kind):
            def fn(*args, **kwargs):
                return {"items": [{"kind": kind, "args": args}]}

            return fn

        k8s_client.apps_v1 = SimpleNamespace(
            list_namespaced_stateful_set=lister("StatefulSet"),
            list_stateful_set_for_all_namespaces=lister("StatefulSet"),
            list_namespaced_daemon_set=lister("DaemonSet"),
            list_daemon_set_for_all_namespaces=lister("DaemonSet"),
        )
        k8s_client.batch_v1 = SimpleNamespace(
            list_namespaced_job=lister("Job"), list_job_for_all_namespaces=lister("Job")
        )
        k8s_client.core_v1 = SimpleNamespace(
            list_persistent_volume=lister("PersistentVolume"),
            read_node=lambda name, **kwargs: {"metadata": {"name": name}},
        )

        statefulsets = await k8s_client.list_statefulsets("data")
        daemonsets = await k8s_client.list_daemonsets()
        jobs = await k8s_client.list_jobs("*")

        assert statefulsets == [{"kind": "StatefulSet", "args": ("data",)}]
        assert daemonsets == [{"kind": "DaemonSet", "args": ()}]
        assert jobs == [{"kind": "Job", "args": ()}]
        assert (await k8s_client.list_pvs())[0]["kind"] == "PersistentVolume"
        assert (await k8s_client.get_node("node-1"))["metadata"]["name"] == "node-1"
