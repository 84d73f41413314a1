"""Prompt templates that sequence the diagnostic tools for an agent."""


def debug_unreachable_url(hostname: str, path: str = "/") -> str:
    """
    Debug why a URL served by the cluster is unreachable or returns 5xx.

    Args:
        hostname: Host part of the failing URL (e.g. api.example.com)
        path: Request path (default "/")
    """
    return f"""Debug why https://{hostname}{path} is unreachable.

1. Run diagnose_request_path(hostname="{hostname}", path="{path}") to trace
   Ingress -> Service -> Endpoints -> Pods and read the FINDINGS block.
2. If the trace stops at the Ingress, run analyze_all_ingresses for the namespace
   to look for missing hosts or conflicting host/path rules.
3. If the Service has no ready endpoints, run analyze_service_connectivity on the
   backend service, then diagnose_pod on each unhealthy pod it lists.
4. If pods are healthy but traffic still fails, run analyze_network_policies for the
   namespace and check_dns_health for the cluster.
5. If pods are restarting, run analyze_service_logs on the owning deployment.

Finish with the root cause, the evidence (quote the findings) and the fix."""


def triage_cluster() -> str:
    """
    Broad health triage of the current cluster.
    """
    return """Triage the health of this Kubernetes cluster.

1. Run cluster_health_overview and note every CRITICAL and WARNING finding.
2. For each namespace with unhealthy pods, run diagnose_namespace, then
   find_unhealthy_pods and diagnose_pod for the worst offenders.
3. For services reported DEAD or DEGRADED, run diagnose_service.
4. Run check_dns_health and analyze_node_capacity to rule out cluster-wide causes.
5. Run analyze_resource_usage on the busiest namespaces to spot pods near their limits.

Summarize the issues by severity with one suggested action each."""
