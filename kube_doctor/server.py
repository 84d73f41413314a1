"""
Kube Doctor MCP Server

Read-only Kubernetes diagnostics: request-path tracing, service and cluster
health, network policy, DNS and resource analysis. Every tool returns a plain
text report with a FINDINGS block and Mermaid diagrams.

Usage:
    kube-doctor-mcp
"""

import logging
from typing import Dict, Optional

from fastmcp import FastMCP
from kubernetes import config as k8s_config

from kube_doctor import diagnostics, prompts
from kube_doctor.client import K8sClient
from kube_doctor.config import LOG_LEVEL

logging.basicConfig(
    level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

mcp = FastMCP(
    "Kube Doctor Server",
    instructions="""
Kubernetes diagnostics that explain WHY something is broken, not just what exists.

**Multi-Context Usage:**
- All tools accept optional `context` parameter to target specific K8s clusters
- Without `context`, uses current kubectl context
- Call `list_contexts()` first to see available clusters

**Reports:**
- Every tool returns one text report: sections, a FINDINGS block graded
  CRITICAL / WARNING / INFO, numbered SUGGESTED ACTIONS and ```mermaid diagrams
- Namespace "" / "all" / "*" means all namespaces where a tool accepts it

**Common Workflows:**
1. URL failing → `diagnose_request_path(hostname, path)`
2. Service unreachable → `diagnose_service` → `analyze_service_connectivity`
3. Pod crashing → `diagnose_pod` → `analyze_service_logs`
4. Cluster triage → `cluster_health_overview` → `diagnose_namespace`

**Best Practices:**
- Start broad (overview tools) and drill down into what the findings name
- Specify context when working with multiple clusters
- All tools are read-only; nothing in the cluster is modified
""",
)

k8s_clients: Dict[str, K8sClient] = {}


def _ensure_initialized(context: Optional[str] = None) -> K8sClient:
    """Ensure a K8s client exists for the given context.

    Args:
        context: Kubernetes context name. If None, uses current active context.

    Returns:
        The K8sClient for that context
    """
    ctx_key = context or "current"

    if ctx_key not in k8s_clients:
        logger.info(f"Initializing Kubernetes client for context: {context or 'current'}...")
        k8s_clients[ctx_key] = K8sClient(context=context)
        logger.info(f"Kubernetes client initialized successfully for context: {context or 'current'}")

    return k8s_clients[ctx_key]


@mcp.tool()
async def list_contexts() -> dict:
    """
    List available Kubernetes contexts.

    Use the 'context' parameter in other tools to switch to a different context.

    Returns:
        Available contexts and the current context
    """
    try:
        contexts, active_context = k8s_config.list_kube_config_contexts()
        return {
            "current": active_context["name"] if active_context else None,
            "available": [ctx["name"] for ctx in contexts],
            "count": len(contexts),
            "usage_note": "To use a different context, pass the 'context' parameter to other tools.",
        }
    except Exception as e:
        logger.error(f"Error listing contexts: {e}", exc_info=True)
        return {"error": str(e)}


@mcp.tool()
async def diagnose_request_path(
    hostname: str, path: str = "/", namespace: str = "", context: Optional[str] = None
) -> str:
    """
    Trace a request through Ingress -> Service -> Endpoints -> Pods.

    The flagship tool for "why does this URL return 502/503/404". Walks every
    hop, grades what it finds and draws a topology and a request-flow diagram.

    Args:
        hostname: Host of the request (e.g. "api.example.com")
        path: Request path (default "/")
        namespace: Restrict the Ingress search to one namespace ("" = all)
        context: Kubernetes context name (optional, uses current context if not specified)

    Returns:
        Staged trace report with findings, suggested actions and diagrams
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.diagnose_request_path(client, hostname, path, namespace)
    except Exception as e:
        logger.error(f"Error diagnosing request path {hostname}{path}: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def trace_ingress_to_backend(namespace: str, ingress_name: str, context: Optional[str] = None) -> str:
    """
    Walk every rule and path of one Ingress down to its backend pods.

    Args:
        namespace: Namespace of the Ingress
        ingress_name: Name of the Ingress
        context: Kubernetes context name (optional)

    Returns:
        Per-path backend, port, endpoint and pod checks plus a flowchart
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.trace_ingress_to_backend(client, namespace, ingress_name)
    except Exception as e:
        logger.error(f"Error tracing ingress {namespace}/{ingress_name}: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def analyze_all_ingresses(namespace: str = "", context: Optional[str] = None) -> str:
    """
    Audit every Ingress: backends, ports, endpoints, TLS and host/path conflicts.

    Args:
        namespace: Namespace to audit ("" = all namespaces)
        context: Kubernetes context name (optional)

    Returns:
        Ingress audit report
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.analyze_all_ingresses(client, namespace)
    except Exception as e:
        logger.error(f"Error auditing ingresses: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def diagnose_service(namespace: str, service_name: str, context: Optional[str] = None) -> str:
    """
    Deep diagnosis of one Service.

    Covers configuration, endpoint health, backing pods, resource usage, Ingress
    exposure, network policies and recent events, with a service context diagram.

    Args:
        namespace: Namespace of the Service
        service_name: Name of the Service
        context: Kubernetes context name (optional)

    Returns:
        Service diagnosis report
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.diagnose_service(client, namespace, service_name)
    except Exception as e:
        logger.error(f"Error diagnosing service {namespace}/{service_name}: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def analyze_service_connectivity(namespace: str, service_name: str, context: Optional[str] = None) -> str:
    """
    Six ordered checks on why a Service cannot be reached.

    Service exists, selector matches pods, endpoints ready, port mapping,
    network policies and Ingress exposure.

    Args:
        namespace: Namespace of the Service
        service_name: Name of the Service
        context: Kubernetes context name (optional)

    Returns:
        Connectivity report with a connectivity diagram
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.analyze_service_connectivity(client, namespace, service_name)
    except Exception as e:
        logger.error(f"Error analyzing connectivity of {namespace}/{service_name}: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def analyze_service_logs(
    namespace: str,
    deployment_name: str,
    pattern: str = "",
    tail_lines: int = 200,
    context: Optional[str] = None,
) -> str:
    """
    Search the logs of a Deployment's pods for error patterns.

    Args:
        namespace: Namespace of the Deployment
        deployment_name: Name of the Deployment
        pattern: Regular expression to match (default: common error keywords)
        tail_lines: Lines to read from each container (default 200)
        context: Kubernetes context name (optional)

    Returns:
        Match counts per term and per pod with sample lines
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.analyze_service_logs(client, namespace, deployment_name, pattern, tail_lines)
    except Exception as e:
        logger.error(f"Error analyzing logs of {namespace}/{deployment_name}: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def map_service_topology(namespace: str, context: Optional[str] = None) -> str:
    """
    Map services, their pods, ingresses and inferred service dependencies.

    Dependencies are mined from container environment variables and tagged
    with a confidence level; they are heuristics, not verified traffic.

    Args:
        namespace: A specific namespace (all-namespace values are rejected)
        context: Kubernetes context name (optional)

    Returns:
        Topology tables, findings and a layered flowchart
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.map_service_topology(client, namespace)
    except Exception as e:
        logger.error(f"Error mapping service topology for {namespace}: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def list_endpoint_health(namespace: str = "", context: Optional[str] = None) -> str:
    """
    Endpoint status of every Service: HEALTHY, DEGRADED, DEAD, EXTERNAL, NO-SELECTOR or ERROR.

    Args:
        namespace: Namespace to check ("" = all namespaces)
        context: Kubernetes context name (optional)

    Returns:
        Endpoint table, summary and findings
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.list_endpoint_health(client, namespace)
    except Exception as e:
        logger.error(f"Error listing endpoint health: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def cluster_health_overview(context: Optional[str] = None) -> str:
    """
    One-call cluster dashboard.

    Nodes, resource utilization, pod health by namespace, service endpoints,
    recent warnings and kube-system health, with a cluster topology diagram.

    Args:
        context: Kubernetes context name (optional)

    Returns:
        Cluster health report
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.cluster_health_overview(client)
    except Exception as e:
        logger.error(f"Error building cluster health overview: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def diagnose_namespace(namespace: str, context: Optional[str] = None) -> str:
    """
    Health summary of one namespace: pods, deployments, events and PVCs.

    Args:
        namespace: Namespace to diagnose
        context: Kubernetes context name (optional)
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.diagnose_namespace(client, namespace)
    except Exception as e:
        logger.error(f"Error diagnosing namespace {namespace}: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def diagnose_pod(namespace: str, name: str, context: Optional[str] = None) -> str:
    """
    Diagnose one pod: container states, conditions, limits, events and crash logs.

    Args:
        namespace: Namespace of the pod
        name: Pod name
        context: Kubernetes context name (optional)
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.diagnose_pod(client, namespace, name)
    except Exception as e:
        logger.error(f"Error diagnosing pod {namespace}/{name}: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def find_unhealthy_pods(namespace: str = "", context: Optional[str] = None) -> str:
    """
    List every pod that is not Running-and-Ready (or Succeeded).

    Args:
        namespace: Namespace to search ("" = all namespaces)
        context: Kubernetes context name (optional)
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.find_unhealthy_pods(client, namespace)
    except Exception as e:
        logger.error(f"Error finding unhealthy pods: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def check_resource_quotas(namespace: str = "", context: Optional[str] = None) -> str:
    """
    Used vs hard for every ResourceQuota; usage at 80% or more is flagged.

    Args:
        namespace: Namespace to check ("" = all namespaces)
        context: Kubernetes context name (optional)
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.check_resource_quotas(client, namespace)
    except Exception as e:
        logger.error(f"Error checking resource quotas: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def analyze_network_policies(namespace: str = "", context: Optional[str] = None) -> str:
    """
    Audit NetworkPolicies: coverage, allow/deny matrix and deny-all rules.

    Args:
        namespace: Namespace to audit ("" = all namespaces)
        context: Kubernetes context name (optional)

    Returns:
        Policy report with a network flow diagram
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.analyze_network_policies(client, namespace)
    except Exception as e:
        logger.error(f"Error analyzing network policies: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def check_dns_health(context: Optional[str] = None) -> str:
    """
    CoreDNS health: pods, kube-dns service and a log scan for resolver errors.

    Args:
        context: Kubernetes context name (optional)
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.check_dns_health(client)
    except Exception as e:
        logger.error(f"Error checking DNS health: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def analyze_resource_usage(namespace: str = "", context: Optional[str] = None) -> str:
    """
    Per-pod CPU/memory usage against requests and limits, graded by category.

    Requires metrics-server for live usage; without it the report says so.

    Args:
        namespace: Namespace to analyze ("" = all namespaces)
        context: Kubernetes context name (optional)

    Returns:
        Usage report with a top-consumers chart
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.analyze_resource_usage(client, namespace)
    except Exception as e:
        logger.error(f"Error analyzing resource usage: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def analyze_node_capacity(context: Optional[str] = None) -> str:
    """
    Per-node allocatable vs requested vs used, with scheduling headroom.

    Args:
        context: Kubernetes context name (optional)
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.analyze_node_capacity(client)
    except Exception as e:
        logger.error(f"Error analyzing node capacity: {e}", exc_info=True)
        return f"Error: {e}"


@mcp.tool()
async def analyze_resource_efficiency(namespace: str = "", context: Optional[str] = None) -> str:
    """
    Waste (requested but unused), bin packing and right-sizing opportunities.

    Args:
        namespace: Namespace to analyze ("" = all namespaces)
        context: Kubernetes context name (optional)
    """
    try:
        client = _ensure_initialized(context)
        return await diagnostics.analyze_resource_efficiency(client, namespace)
    except Exception as e:
        logger.error(f"Error analyzing resource efficiency: {e}", exc_info=True)
        return f"Error: {e}"


# Register prompts from prompts.py
mcp.prompt()(prompts.debug_unreachable_url)
mcp.prompt()(prompts.triage_cluster)


def main():
    """Entry point for the kube-doctor-mcp command."""
    logger.info("Starting Kube Doctor MCP Server...")
    mcp.run()


if __name__ == "__main__":
    main()
