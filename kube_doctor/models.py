from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    INFO = "INFO"


class HealthVerdict(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class ResourceRef:
    kind: str
    name: str
    namespace: Optional[str] = None

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @classmethod
    def from_resource(cls, kind: str, resource: dict) -> "ResourceRef":
        metadata = resource.get("metadata", {})
        return cls(kind=kind, name=metadata.get("name", ""), namespace=metadata.get("namespace"))


@dataclass(frozen=True)
class Finding:
    severity: Severity
    message: str
    subject: Optional[ResourceRef] = None

    def format(self) -> str:
        return f"[{self.severity.value}] {self.message}"


@dataclass(frozen=True)
class EndpointAddress:
    ip: str
    pod_name: str = ""
    node_name: str = ""


@dataclass
class EndpointHealth:
    """Readiness of the addresses backing one Service.

    Addresses only carry the pod name as a back-reference; the pod may already be
    gone by the time a caller looks it up.
    """

    service: ResourceRef
    ready_addresses: List[EndpointAddress] = field(default_factory=list)
    not_ready_addresses: List[EndpointAddress] = field(default_factory=list)

    @property
    def ready_count(self) -> int:
        return len(self.ready_addresses)

    @property
    def not_ready_count(self) -> int:
        return len(self.not_ready_addresses)

    @property
    def total_endpoints(self) -> int:
        return self.ready_count + self.not_ready_count


@dataclass(frozen=True)
class ServiceDependency:
    """Heuristic edge between two services, never verified topology."""

    from_service: str
    to_service: str
    confidence: Confidence
    source: str

    @property
    def key(self) -> str:
        return f"{self.from_service}->{self.to_service}"


@dataclass(frozen=True)
class ErrorPatternCount:
    pattern: str
    count: int


@dataclass(frozen=True)
class ResourceUsage:
    cpu_millicores: int = 0
    memory_bytes: int = 0


@dataclass
class MetricsSnapshot:
    """Live usage from metrics-server, or an explicit unavailable state.

    Node usage is keyed by node name, pod usage by ``namespace/name``. An
    unavailable snapshot never reports zero usage: every lookup returns None.
    """

    available: bool
    usage: Dict[str, ResourceUsage] = field(default_factory=dict)
    containers: Dict[str, Dict[str, ResourceUsage]] = field(default_factory=dict)
    reason: str = ""

    @classmethod
    def unavailable(cls, reason: str) -> "MetricsSnapshot":
        return cls(available=False, reason=reason)

    @staticmethod
    def pod_key(namespace: Optional[str], name: str) -> str:
        return f"{namespace or ''}/{name}"

    def get(self, key: str) -> Optional[ResourceUsage]:
        if not self.available:
            return None
        return self.usage.get(key)

    def pod(self, namespace: Optional[str], name: str) -> Optional[ResourceUsage]:
        return self.get(self.pod_key(namespace, name))

    def container(self, namespace: Optional[str], pod_name: str, container_name: str) -> Optional[ResourceUsage]:
        if not self.available:
            return None
        return self.containers.get(self.pod_key(namespace, pod_name), {}).get(container_name)
