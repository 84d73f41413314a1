"""One-hop navigation of the resource graph.

Resolvers return an empty / None result when a resource is legitimately absent
and only raise on API failure.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .client import K8sClient, selector_string
from .models import (
    Confidence,
    EndpointAddress,
    EndpointHealth,
    ResourceRef,
    ServiceDependency,
)

logger = logging.getLogger(__name__)

AGIC_ANNOTATION_PREFIX = "appgw.ingress.kubernetes.io/"
SERVICE_HOST_SUFFIX = "_SERVICE_HOST"


@dataclass
class IngressMatch:
    ingress: Dict[str, Any]
    rule: Dict[str, Any]
    path: Dict[str, Any]

    @property
    def path_type(self) -> str:
        return self.path.get("pathType") or "Prefix"

    @property
    def backend_service(self) -> Tuple[str, str]:
        """``(name, port)`` of the path's backend service; empty strings when unset."""
        return backend_service_ref(self.path)


def backend_service_ref(ingress_path: Dict[str, Any]) -> Tuple[str, str]:
    service = ((ingress_path.get("backend") or {}).get("service")) or {}
    port = service.get("port") or {}
    port_value = port.get("number") or port.get("name") or ""
    return service.get("name") or "", str(port_value)


def selector_matches(selector: Optional[Dict[str, str]], labels: Optional[Dict[str, str]]) -> bool:
    """AND of every key=value pair of ``selector`` against ``labels``.

    An empty selector matches nothing; callers that want "select everything"
    semantics check for emptiness themselves.
    """
    if not selector:
        return False
    labels = labels or {}
    return all(labels.get(key) == value for key, value in selector.items())


def policy_selects_service(policy_labels: Optional[Dict[str, str]], service_selector: Optional[Dict[str, str]]) -> bool:
    """Whether a NetworkPolicy podSelector applies to a service's pods.

    Exact-match heuristic over the service selector: an empty policy selector
    applies to every pod.
    """
    if not policy_labels:
        return True
    return selector_matches(policy_labels, service_selector)


def label_selector_matches(label_selector: Optional[Dict[str, Any]], labels: Optional[Dict[str, str]]) -> bool:
    """Full ``metav1.LabelSelector`` semantics; an empty selector selects everything."""
    label_selector = label_selector or {}
    labels = labels or {}

    match_labels = label_selector.get("matchLabels") or {}
    if match_labels and not selector_matches(match_labels, labels):
        return False

    for expr in label_selector.get("matchExpressions") or []:
        key = expr.get("key")
        operator = expr.get("operator")
        values = expr.get("values") or []
        if operator == "In":
            if labels.get(key) not in values:
                return False
        elif operator == "NotIn":
            if key in labels and labels[key] in values:
                return False
        elif operator == "Exists":
            if key not in labels:
                return False
        elif operator == "DoesNotExist":
            if key in labels:
                return False
        else:
            logger.warning(f"Unknown label selector operator: {operator}")
            return False

    return True


def match_path(pattern: str, path: str, path_type: Optional[str] = "Prefix") -> bool:
    """Exact requires equality; Prefix and ImplementationSpecific are a string-prefix test."""
    if path_type == "Exact":
        return path == pattern
    return path.startswith(pattern)


def paths_overlap(a: str, b: str) -> bool:
    """Two ingress paths overlap when equal or when one is a prefix of the other."""
    return a == b or a.startswith(b) or b.startswith(a)


def ingress_class_name(ingress: Dict[str, Any]) -> str:
    class_name = (ingress.get("spec") or {}).get("ingressClassName")
    if class_name:
        return class_name
    annotations = (ingress.get("metadata") or {}).get("annotations") or {}
    return annotations.get("kubernetes.io/ingress.class") or "<none>"


def parse_agic_annotations(ingress: Dict[str, Any]) -> List[Tuple[str, str]]:
    annotations = (ingress.get("metadata") or {}).get("annotations") or {}
    return [
        (key[len(AGIC_ANNOTATION_PREFIX):], value)
        for key, value in annotations.items()
        if key.startswith(AGIC_ANNOTATION_PREFIX)
    ]


def format_service_ports(service: Dict[str, Any]) -> str:
    ports = (service.get("spec") or {}).get("ports") or []
    if not ports:
        return "<none>"

    parts = []
    for port in ports:
        target = port.get("targetPort")
        if target in (None, 0, ""):
            target = port.get("port")
        text = f"{port.get('port')}→{target}"
        if port.get("name"):
            text = f"{port['name']}({text})"
        protocol = port.get("protocol") or "TCP"
        if protocol != "TCP":
            text += f"/{protocol}"
        parts.append(text)
    return ", ".join(parts)


def service_port_matches(service: Dict[str, Any], port: str) -> bool:
    """Whether an ingress backend port (number or name) is declared by the service."""
    if not port:
        return True
    for svc_port in (service.get("spec") or {}).get("ports") or []:
        if str(svc_port.get("port")) == str(port) or svc_port.get("name") == port:
            return True
    return False


def tls_secret_for_host(ingress: Dict[str, Any], host: str) -> Optional[Dict[str, Any]]:
    for tls in (ingress.get("spec") or {}).get("tls") or []:
        if host in (tls.get("hosts") or []):
            return tls
    return None


def ingress_backend_services(ingress: Dict[str, Any]) -> List[Tuple[str, str, str, str]]:
    """``(host, path, service, port)`` for every HTTP path of an ingress."""
    backends = []
    spec = ingress.get("spec") or {}
    default = spec.get("defaultBackend")
    if default:
        name, port = backend_service_ref(default)
        if name:
            backends.append(("*", "(default)", name, port))
    for rule in spec.get("rules") or []:
        for ingress_path in ((rule.get("http") or {}).get("paths")) or []:
            name, port = backend_service_ref(ingress_path)
            backends.append((rule.get("host") or "*", ingress_path.get("path") or "/", name, port))
    return backends


def find_ingresses_for_service(
    ingresses: List[Dict[str, Any]], namespace: str, service_name: str
) -> List[Tuple[Dict[str, Any], str, str]]:
    """Reverse lookup: ``(ingress, host, path)`` for every path routing to the service."""
    matches = []
    for ingress in ingresses:
        if (ingress.get("metadata") or {}).get("namespace") != namespace:
            continue
        for host, path, name, _ in ingress_backend_services(ingress):
            if name == service_name:
                matches.append((ingress, host, path))
    return matches


async def find_ingress_for_host_path(
    client: K8sClient, namespace: str, host: str, path: str
) -> Optional[IngressMatch]:
    """First ingress path routing ``host`` + ``path``, in accessor order."""
    ingresses = await client.list_ingresses(namespace)

    for ingress in ingresses:
        for rule in (ingress.get("spec") or {}).get("rules") or []:
            if rule.get("host") != host or not rule.get("http"):
                continue
            for ingress_path in rule["http"].get("paths") or []:
                path_type = ingress_path.get("pathType") or "Prefix"
                if match_path(ingress_path.get("path") or "/", path, path_type):
                    return IngressMatch(ingress=ingress, rule=rule, path=ingress_path)

    logger.debug(f"No ingress found for {host}{path} (namespace: {namespace or 'all'})")
    return None


async def get_pods_for_service(client: K8sClient, service: Dict[str, Any]) -> List[Dict[str, Any]]:
    selector = (service.get("spec") or {}).get("selector") or {}
    if not selector:
        return []
    namespace = (service.get("metadata") or {}).get("namespace")
    return await client.list_pods(namespace, label_selector=selector_string(selector))


def _addresses(raw: Optional[List[Dict[str, Any]]]) -> List[EndpointAddress]:
    addresses = []
    for addr in raw or []:
        target = addr.get("targetRef") or {}
        addresses.append(
            EndpointAddress(
                ip=addr.get("ip", ""),
                pod_name=target.get("name") or "",
                node_name=addr.get("nodeName") or "",
            )
        )
    return addresses


def endpoint_health_from(endpoints: Dict[str, Any], namespace: str, service_name: str) -> EndpointHealth:
    health = EndpointHealth(service=ResourceRef("Service", service_name, namespace))
    for subset in endpoints.get("subsets") or []:
        health.ready_addresses.extend(_addresses(subset.get("addresses")))
        health.not_ready_addresses.extend(_addresses(subset.get("notReadyAddresses")))
    return health


async def get_service_endpoint_health(client: K8sClient, namespace: str, service_name: str) -> EndpointHealth:
    endpoints = await client.get_endpoints(namespace, service_name)
    return endpoint_health_from(endpoints, namespace, service_name)


def map_pods_to_services(
    services: List[Dict[str, Any]], pods: List[Dict[str, Any]]
) -> Dict[str, List[Dict[str, Any]]]:
    """Assign each pod to the first service whose selector matches it."""
    svc_to_pods: Dict[str, List[Dict[str, Any]]] = {}
    for pod in pods:
        labels = (pod.get("metadata") or {}).get("labels") or {}
        for svc in services:
            if selector_matches((svc.get("spec") or {}).get("selector"), labels):
                svc_to_pods.setdefault(svc["metadata"]["name"], []).append(pod)
                break
    return svc_to_pods


def dependencies_from_env(
    services: List[Dict[str, Any]], pods: List[Dict[str, Any]], namespace: str
) -> List[ServiceDependency]:
    svc_names = [svc["metadata"]["name"] for svc in services]
    known = set(svc_names)
    svc_to_pods = map_pods_to_services(services, pods)

    deps: List[ServiceDependency] = []
    seen = set()

    def record(source: str, target: str, confidence: Confidence) -> None:
        dep = ServiceDependency(source, target, confidence, "env")
        if dep.key not in seen:
            seen.add(dep.key)
            deps.append(dep)

    for svc_name in svc_names:
        for pod in svc_to_pods.get(svc_name, []):
            for container in (pod.get("spec") or {}).get("containers") or []:
                for env in container.get("env") or []:
                    env_name = env.get("name") or ""
                    if env_name.endswith(SERVICE_HOST_SUFFIX):
                        target = env_name[: -len(SERVICE_HOST_SUFFIX)].replace("_", "-").lower()
                        if target in known and target != svc_name:
                            record(svc_name, target, Confidence.HIGH)

                    value = env.get("value") or ""
                    if not value:
                        continue
                    for candidate in svc_names:
                        if candidate != svc_name and f"{candidate}.{namespace}" in value:
                            record(svc_name, candidate, Confidence.MEDIUM)

    return deps


async def infer_service_dependencies(client: K8sClient, namespace: str) -> List[ServiceDependency]:
    """Heuristic service-to-service edges mined from container environment variables."""
    services = await client.list_services(namespace)
    pods = await client.list_pods(namespace)
    deps = dependencies_from_env(services, pods, namespace)
    logger.debug(f"Inferred {len(deps)} service dependencies in {namespace}")
    return deps
