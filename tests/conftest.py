from unittest.mock import AsyncMock, Mock

import pytest
from kubernetes.client.exceptions import ApiException

from kube_doctor.models import MetricsSnapshot

pytest_plugins = ("pytest_asyncio",)

LIST_METHODS = (
    "list_namespaces",
    "list_pods",
    "list_events",
    "get_events_for_object",
    "list_deployments",
    "list_nodes",
    "list_services",
    "list_ingresses",
    "list_pvcs",
    "list_network_policies",
    "list_resource_quotas",
)
GET_METHODS = ("get_pod", "get_deployment", "get_service", "get_ingress", "get_endpoints", "get_node")


def not_found():
    return ApiException(status=404, reason="Not Found")


@pytest.fixture
def mock_client():
    """Factory for a K8sClient stand-in.

    List methods return ``[]``, get methods raise a 404, metrics are unavailable
    and logs are empty unless overridden by keyword.
    """

    def build(**overrides):
        client = Mock()
        client.context = "test-context"
        for method in LIST_METHODS:
            setattr(client, method, AsyncMock(return_value=[]))
        for method in GET_METHODS:
            setattr(client, method, AsyncMock(side_effect=not_found()))
        client.get_pod_logs = AsyncMock(return_value="")
        client.get_pod_metrics = AsyncMock(return_value=MetricsSnapshot.unavailable("metrics-server not available"))
        client.get_node_metrics = AsyncMock(return_value=MetricsSnapshot.unavailable("metrics-server not available"))
        for method, value in overrides.items():
            if isinstance(value, Exception):
                setattr(client, method, AsyncMock(side_effect=value))
            else:
                setattr(client, method, AsyncMock(return_value=value))
        return client

    return build


@pytest.fixture
def make_pod():
    def build(
        name,
        namespace="default",
        labels=None,
        phase="Running",
        ready=True,
        restarts=0,
        waiting_reason=None,
        node="node-1",
        limits=None,
        requests=None,
        probes=True,
    ):
        state = {"running": {"startedAt": "2024-01-01T00:00:00Z"}}
        if waiting_reason:
            state = {"waiting": {"reason": waiting_reason}}
        container = {"name": "main", "image": "nginx:latest"}
        resources = {}
        if limits:
            resources["limits"] = limits
        if requests:
            resources["requests"] = requests
        if resources:
            container["resources"] = resources
        if probes:
            container["readinessProbe"] = {"httpGet": {"path": "/ready", "port": 8080}}
            container["livenessProbe"] = {"httpGet": {"path": "/healthz", "port": 8080}}
        return {
            "kind": "Pod",
            "apiVersion": "v1",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": labels if labels is not None else {"app": "test"},
                "creationTimestamp": "2024-01-01T00:00:00Z",
            },
            "spec": {"nodeName": node, "containers": [container]},
            "status": {
                "phase": phase,
                "containerStatuses": [
                    {"name": "main", "ready": ready, "restartCount": restarts, "state": state}
                ],
            },
        }

    return build


@pytest.fixture
def make_service():
    def build(name, namespace="default", selector=None, port=80, target_port=8080, svc_type="ClusterIP"):
        spec = {
            "type": svc_type,
            "clusterIP": "10.0.0.10",
            "ports": [{"name": "http", "port": port, "targetPort": target_port, "protocol": "TCP"}],
        }
        if selector is not None:
            spec["selector"] = selector
        return {
            "kind": "Service",
            "apiVersion": "v1",
            "metadata": {"name": name, "namespace": namespace, "creationTimestamp": "2024-01-01T00:00:00Z"},
            "spec": spec,
        }

    return build


@pytest.fixture
def make_endpoints():
    def build(ready=(), not_ready=()):
        subset = {}
        if ready:
            subset["addresses"] = [
                {"ip": f"10.1.0.{i}", "targetRef": {"kind": "Pod", "name": name}} for i, name in enumerate(ready, 1)
            ]
        if not_ready:
            subset["notReadyAddresses"] = [
                {"ip": f"10.2.0.{i}", "targetRef": {"kind": "Pod", "name": name}}
                for i, name in enumerate(not_ready, 1)
            ]
        return {"subsets": [subset] if subset else []}

    return build


@pytest.fixture
def make_ingress():
    def build(name, host, paths, namespace="default", tls_hosts=None):
        ingress_paths = [
            {
                "path": path,
                "pathType": "Prefix",
                "backend": {"service": {"name": svc, "port": {"number": port}}},
            }
            for path, svc, port in paths
        ]
        spec = {"ingressClassName": "nginx", "rules": [{"host": host, "http": {"paths": ingress_paths}}]}
        if tls_hosts:
            spec["tls"] = [{"hosts": tls_hosts, "secretName": f"{name}-tls"}]
        return {
            "kind": "Ingress",
            "apiVersion": "networking.k8s.io/v1",
            "metadata": {"name": name, "namespace": namespace, "creationTimestamp": "2024-01-01T00:00:00Z"},
            "spec": spec,
        }

    return build
