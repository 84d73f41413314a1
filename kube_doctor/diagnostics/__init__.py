from .cluster import cluster_health_overview
from .dns import check_dns_health
from .ingress import analyze_all_ingresses, trace_ingress_to_backend
from .network import list_endpoint_health, map_service_topology
from .network_policy import analyze_network_policies
from .request_path import diagnose_request_path
from .resources import analyze_node_capacity, analyze_resource_efficiency, analyze_resource_usage
from .service import analyze_service_connectivity, analyze_service_logs, diagnose_service
from .workloads import check_resource_quotas, diagnose_namespace, diagnose_pod, find_unhealthy_pods

__all__ = [
    "analyze_all_ingresses",
    "analyze_network_policies",
    "analyze_node_capacity",
    "analyze_resource_efficiency",
    "analyze_resource_usage",
    "analyze_service_connectivity",
    "analyze_service_logs",
    "check_dns_health",
    "check_resource_quotas",
    "cluster_health_overview",
    "diagnose_namespace",
    "diagnose_pod",
    "diagnose_request_path",
    "diagnose_service",
    "find_unhealthy_pods",
    "list_endpoint_health",
    "map_service_topology",
    "trace_ingress_to_backend",
]
