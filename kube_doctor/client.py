import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from kubernetes import client as k8s_api_client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException

from .config import (
    ALL_NAMESPACE_ALIASES,
    DEFAULT_TAIL_LINES,
    DEFAULT_TIMEOUT,
    LOG_TRUNCATION_MARKER,
    MAX_EVENTS,
    MAX_LOG_BYTES,
    MAX_PODS,
)
from .formatters.report import parse_timestamp
from .health import parse_cpu, parse_memory
from .models import MetricsSnapshot, ResourceUsage

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class KubeConfigError(Exception):
    pass


def normalize_namespace(namespace: Optional[str]) -> str:
    """Map every "all namespaces" spelling onto the empty string."""
    if namespace is None:
        return ""
    namespace = namespace.strip()
    return "" if namespace.lower() in ALL_NAMESPACE_ALIASES else namespace


def display_namespace(namespace: Optional[str]) -> str:
    return normalize_namespace(namespace) or "all"


def is_not_found(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 404


def event_time(event: Dict[str, Any]) -> datetime:
    """Last time an event was seen, falling back to when it was created."""
    for value in (
        event.get("lastTimestamp"),
        event.get("eventTime"),
        (event.get("metadata") or {}).get("creationTimestamp"),
    ):
        parsed = parse_timestamp(value)
        if parsed is not None:
            return parsed
    return _EPOCH


def selector_string(selector: Optional[Dict[str, str]]) -> str:
    return ",".join(f"{k}={v}" for k, v in (selector or {}).items())


class K8sClient:
    """Read-only accessor over the Kubernetes API.

    Every call is a single attempt bounded by ``timeout``; results are plain
    camelCase dicts as the API server returns them. The instance only holds its
    ``ApiClient`` and can be shared by concurrent tool calls.
    """

    def __init__(self, context: Optional[str] = None, timeout: int = DEFAULT_TIMEOUT, api_client=None):
        self.context = context
        self.timeout = timeout
        self.api_client = api_client or self._load_api_client(context)

        self.core_v1 = k8s_api_client.CoreV1Api(self.api_client)
        self.apps_v1 = k8s_api_client.AppsV1Api(self.api_client)
        self.batch_v1 = k8s_api_client.BatchV1Api(self.api_client)
        self.networking_v1 = k8s_api_client.NetworkingV1Api(self.api_client)
        self.custom_objects = k8s_api_client.CustomObjectsApi(self.api_client)

    @staticmethod
    def _load_api_client(context: Optional[str]):
        try:
            api_client = k8s_config.new_client_from_config(context=context)
            logger.info(f"Loaded kubeconfig (context: {context or 'current'})")
            return api_client
        except (k8s_config.ConfigException, FileNotFoundError) as e:
            if context:
                raise KubeConfigError(f"Failed to load kubeconfig context '{context}': {e}") from e
            logger.info(f"No usable kubeconfig ({e}), trying in-cluster configuration")

        try:
            k8s_config.load_incluster_config()
        except k8s_config.ConfigException as e:
            raise KubeConfigError(f"Failed to load Kubernetes config (kubeconfig or in-cluster): {e}") from e
        return k8s_api_client.ApiClient()

    async def _call(self, fn, *args, **kwargs):
        kwargs.setdefault("_request_timeout", self.timeout)
        logger.debug(f"K8s API call {fn.__name__} args={args}")
        return await asyncio.to_thread(fn, *args, **kwargs)

    def _to_dict(self, obj) -> Dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    async def _list(self, namespaced_fn, cluster_fn, namespace: Optional[str], **kwargs) -> List[Dict[str, Any]]:
        kwargs = {k: v for k, v in kwargs.items() if v}
        namespace = normalize_namespace(namespace)
        if namespace:
            result = await self._call(namespaced_fn, namespace, **kwargs)
        else:
            result = await self._call(cluster_fn, **kwargs)
        return self._to_dict(result).get("items") or []

    async def _get(self, fn, *args) -> Dict[str, Any]:
        return self._to_dict(await self._call(fn, *args))

    async def list_namespaces(self) -> List[Dict[str, Any]]:
        result = await self._call(self.core_v1.list_namespace)
        return self._to_dict(result).get("items") or []

    async def list_pods(
        self,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        pods = await self._list(
            self.core_v1.list_namespaced_pod,
            self.core_v1.list_pod_for_all_namespaces,
            namespace,
            label_selector=label_selector,
            field_selector=field_selector,
            limit=MAX_PODS,
        )
        return pods[:MAX_PODS]

    async def get_pod(self, namespace: str, name: str) -> Dict[str, Any]:
        return await self._get(self.core_v1.read_namespaced_pod, name, namespace)

    async def get_pod_logs(
        self,
        namespace: str,
        name: str,
        container: Optional[str] = None,
        tail_lines: int = 0,
        previous: bool = False,
        since_seconds: Optional[int] = None,
    ) -> str:
        """Fetch container logs, capped at ``MAX_LOG_BYTES`` with a truncation marker."""
        kwargs = {
            "tail_lines": tail_lines if tail_lines > 0 else DEFAULT_TAIL_LINES,
            "previous": previous,
            "_preload_content": False,
        }
        if container:
            kwargs["container"] = container
        if since_seconds:
            kwargs["since_seconds"] = since_seconds

        response = await self._call(self.core_v1.read_namespaced_pod_log, name, namespace, **kwargs)
        try:
            data = await asyncio.to_thread(response.read, MAX_LOG_BYTES + 1)
        finally:
            response.release_conn()

        if isinstance(data, str):
            data = data.encode("utf-8")
        if len(data) > MAX_LOG_BYTES:
            return data[:MAX_LOG_BYTES].decode("utf-8", errors="replace") + LOG_TRUNCATION_MARKER
        return data.decode("utf-8", errors="replace")

    async def list_events(
        self, namespace: Optional[str] = None, field_selector: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Events sorted most recent first, capped at ``MAX_EVENTS``."""
        events = await self._list(
            self.core_v1.list_namespaced_event,
            self.core_v1.list_event_for_all_namespaces,
            namespace,
            field_selector=field_selector,
        )
        events.sort(key=event_time, reverse=True)
        return events[:MAX_EVENTS]

    async def get_events_for_object(self, namespace: str, name: str) -> List[Dict[str, Any]]:
        return await self.list_events(namespace, field_selector=f"involvedObject.name={name}")

    async def list_deployments(self, namespace: Optional[str] = None, label_selector: Optional[str] = None):
        return await self._list(
            self.apps_v1.list_namespaced_deployment,
            self.apps_v1.list_deployment_for_all_namespaces,
            namespace,
            label_selector=label_selector,
        )

    async def get_deployment(self, namespace: str, name: str) -> Dict[str, Any]:
        return await self._get(self.apps_v1.read_namespaced_deployment, name, namespace)

    async def list_statefulsets(self, namespace: Optional[str] = None, label_selector: Optional[str] = None):
        return await self._list(
            self.apps_v1.list_namespaced_stateful_set,
            self.apps_v1.list_stateful_set_for_all_namespaces,
            namespace,
            label_selector=label_selector,
        )

    async def list_daemonsets(self, namespace: Optional[str] = None, label_selector: Optional[str] = None):
        return await self._list(
            self.apps_v1.list_namespaced_daemon_set,
            self.apps_v1.list_daemon_set_for_all_namespaces,
            namespace,
            label_selector=label_selector,
        )

    async def list_jobs(self, namespace: Optional[str] = None, label_selector: Optional[str] = None):
        return await self._list(
            self.batch_v1.list_namespaced_job,
            self.batch_v1.list_job_for_all_namespaces,
            namespace,
            label_selector=label_selector,
        )

    async def list_nodes(self, label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        kwargs = {"label_selector": label_selector} if label_selector else {}
        result = await self._call(self.core_v1.list_node, **kwargs)
        return self._to_dict(result).get("items") or []

    async def get_node(self, name: str) -> Dict[str, Any]:
        return await self._get(self.core_v1.read_node, name)

    async def list_services(self, namespace: Optional[str] = None, label_selector: Optional[str] = None):
        return await self._list(
            self.core_v1.list_namespaced_service,
            self.core_v1.list_service_for_all_namespaces,
            namespace,
            label_selector=label_selector,
        )

    async def get_service(self, namespace: str, name: str) -> Dict[str, Any]:
        return await self._get(self.core_v1.read_namespaced_service, name, namespace)

    async def list_ingresses(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._list(
            self.networking_v1.list_namespaced_ingress,
            self.networking_v1.list_ingress_for_all_namespaces,
            namespace,
        )

    async def get_ingress(self, namespace: str, name: str) -> Dict[str, Any]:
        return await self._get(self.networking_v1.read_namespaced_ingress, name, namespace)

    async def get_endpoints(self, namespace: str, name: str) -> Dict[str, Any]:
        return await self._get(self.core_v1.read_namespaced_endpoints, name, namespace)

    async def list_pvcs(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._list(
            self.core_v1.list_namespaced_persistent_volume_claim,
            self.core_v1.list_persistent_volume_claim_for_all_namespaces,
            namespace,
        )

    async def list_pvs(self) -> List[Dict[str, Any]]:
        result = await self._call(self.core_v1.list_persistent_volume)
        return self._to_dict(result).get("items") or []

    async def list_network_policies(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._list(
            self.networking_v1.list_namespaced_network_policy,
            self.networking_v1.list_network_policy_for_all_namespaces,
            namespace,
        )

    async def list_resource_quotas(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._list(
            self.core_v1.list_namespaced_resource_quota,
            self.core_v1.list_resource_quota_for_all_namespaces,
            namespace,
        )

    async def get_node_metrics(self) -> MetricsSnapshot:
        """Node usage from metrics.k8s.io; unavailable when metrics-server is absent."""
        try:
            result = await self._call(
                self.custom_objects.list_cluster_custom_object, "metrics.k8s.io", "v1beta1", "nodes"
            )
        except Exception as e:
            logger.warning(f"metrics-server not available for node metrics: {e}")
            return MetricsSnapshot.unavailable(f"metrics-server not available: {e}")

        usage = {}
        for item in result.get("items") or []:
            name = (item.get("metadata") or {}).get("name", "")
            raw = item.get("usage") or {}
            usage[name] = ResourceUsage(parse_cpu(raw.get("cpu")), parse_memory(raw.get("memory")))
        return MetricsSnapshot(available=True, usage=usage)

    async def get_pod_metrics(
        self, namespace: Optional[str] = None, label_selector: Optional[str] = None
    ) -> MetricsSnapshot:
        """Pod and per-container usage; unavailable when metrics-server is absent."""
        namespace = normalize_namespace(namespace)
        kwargs = {"label_selector": label_selector} if label_selector else {}
        try:
            if namespace:
                result = await self._call(
                    self.custom_objects.list_namespaced_custom_object,
                    "metrics.k8s.io", "v1beta1", namespace, "pods", **kwargs
                )
            else:
                result = await self._call(
                    self.custom_objects.list_cluster_custom_object,
                    "metrics.k8s.io", "v1beta1", "pods", **kwargs
                )
        except Exception as e:
            logger.warning(f"metrics-server not available for pod metrics: {e}")
            return MetricsSnapshot.unavailable(f"metrics-server not available: {e}")

        usage = {}
        containers = {}
        for item in result.get("items") or []:
            metadata = item.get("metadata") or {}
            key = MetricsSnapshot.pod_key(metadata.get("namespace"), metadata.get("name", ""))
            per_container = {}
            for c in item.get("containers") or []:
                raw = c.get("usage") or {}
                per_container[c.get("name", "")] = ResourceUsage(
                    parse_cpu(raw.get("cpu")), parse_memory(raw.get("memory"))
                )
            containers[key] = per_container
            usage[key] = ResourceUsage(
                sum(u.cpu_millicores for u in per_container.values()),
                sum(u.memory_bytes for u in per_container.values()),
            )
        return MetricsSnapshot(available=True, usage=usage, containers=containers)
