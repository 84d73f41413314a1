"""NetworkPolicy audit.

Effective policy types follow Kubernetes defaults: the explicit ``policyTypes``
list, or Ingress only when it is unset. A direction that is typed but has no
rules denies all traffic in that direction; an untyped direction is left
unrestricted.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..client import K8sClient, display_namespace, normalize_namespace
from ..formatters.mermaid import Direction, EdgeStyle, Shape
from ..formatters.report import Report, format_labels
from ..formatters.topology_graph import TopologyGraph
from ..health import is_pod_active
from ..models import ResourceRef
from ..topology import label_selector_matches
from .common import labels_of, name_of, namespace_of

logger = logging.getLogger(__name__)

POLICY_TABLE_HEADERS = ["POLICY", "POD SELECTOR", "INGRESS RULES", "EGRESS RULES", "TYPES"]


def effective_policy_types(policy: Dict[str, Any]) -> List[str]:
    types = (policy.get("spec") or {}).get("policyTypes") or []
    return list(types) if types else ["Ingress"]


def denies_all_ingress(policy: Dict[str, Any]) -> bool:
    return "Ingress" in effective_policy_types(policy) and not (policy.get("spec") or {}).get("ingress")


def denies_all_egress(policy: Dict[str, Any]) -> bool:
    return "Egress" in effective_policy_types(policy) and not (policy.get("spec") or {}).get("egress")


def format_label_selector(selector: Optional[Dict[str, Any]], empty: str = "<all pods>") -> str:
    selector = selector or {}
    parts = []
    if selector.get("matchLabels"):
        parts.append(format_labels(selector["matchLabels"]))
    for expr in selector.get("matchExpressions") or []:
        values = expr.get("values") or []
        if values:
            parts.append(f"{expr.get('key')} {expr.get('operator')} ({','.join(values)})")
        else:
            parts.append(f"{expr.get('key')} {expr.get('operator')}")
    return ", ".join(parts) if parts else empty


def describe_peer(peer: Dict[str, Any]) -> str:
    pod_selector = peer.get("podSelector")
    namespace_selector = peer.get("namespaceSelector")
    ip_block = peer.get("ipBlock")

    if ip_block:
        text = f"CIDR {ip_block.get('cidr')}"
        if ip_block.get("except"):
            text += f" except {','.join(ip_block['except'])}"
        return text
    if namespace_selector is not None and pod_selector is not None:
        return (
            f"pods ({format_label_selector(pod_selector)}) in namespaces "
            f"({format_label_selector(namespace_selector, 'all')})"
        )
    if namespace_selector is not None:
        return f"namespaces ({format_label_selector(namespace_selector, 'all')})"
    if pod_selector is not None:
        return f"pods ({format_label_selector(pod_selector)})"
    return "unknown peer"


def describe_ports(rule: Dict[str, Any]) -> str:
    ports = []
    for port in rule.get("ports") or []:
        ports.append(f"{port.get('port', '*')}/{port.get('protocol') or 'TCP'}")
    return ",".join(ports)


def rule_peers(rule: Dict[str, Any], direction: str) -> List[str]:
    """Peers of one ingress or egress rule; an empty peer list means any peer."""
    peers = rule.get("from" if direction == "Ingress" else "to") or []
    if not peers:
        return ["all sources" if direction == "Ingress" else "all destinations"]
    return [describe_peer(peer) for peer in peers]


def policy_covers_pod(policy: Dict[str, Any], pod: Dict[str, Any]) -> bool:
    if namespace_of(policy) != namespace_of(pod):
        return False
    return label_selector_matches((policy.get("spec") or {}).get("podSelector"), labels_of(pod))


def pod_coverage(
    policies: List[Dict[str, Any]], pods: List[Dict[str, Any]]
) -> Tuple[Dict[str, List[str]], List[str]]:
    """``(covered, uncovered)`` for active pods keyed ``namespace/name``; covered maps pod to its policy names."""
    covered: Dict[str, List[str]] = {}
    uncovered: List[str] = []
    for pod in pods:
        if not is_pod_active(pod):
            continue
        matched = [name_of(p) for p in policies if policy_covers_pod(p, pod)]
        if matched:
            covered[f"{namespace_of(pod)}/{name_of(pod)}"] = matched
        else:
            uncovered.append(f"{namespace_of(pod)}/{name_of(pod)}")
    return covered, uncovered


def _rule_lines(report: Report, policy: Dict[str, Any], direction: str) -> None:
    rules = (policy.get("spec") or {}).get(direction.lower()) or []
    if direction not in effective_policy_types(policy):
        report.line(f"{direction}: unrestricted (type not set)", 4)
        return
    if not rules:
        report.line(f"{direction}: DENY ALL", 4)
        return
    for i, rule in enumerate(rules, 1):
        ports = describe_ports(rule)
        peers = "; ".join(rule_peers(rule, direction))
        report.line(f"{direction} Rule {i}: ALLOW {peers}" + (f" on {ports}" if ports else ""), 4)


async def analyze_network_policies(client: K8sClient, namespace: str = "") -> str:
    namespace = normalize_namespace(namespace)
    shown = display_namespace(namespace)
    report = Report(f"Network Policy Analysis (namespace: {shown})")

    policies = await client.list_network_policies(namespace)

    pods: Optional[List[Dict[str, Any]]] = None
    try:
        pods = await client.list_pods(namespace)
    except Exception as e:
        report.unavailable("pods", e, 0)

    if not policies:
        report.warning("No network policies found in this namespace - all traffic is allowed by default")
        if pods is not None:
            active = [p for p in pods if is_pod_active(p)]
            report.line(f"{len(active)} pods are running without any network policy protection.", 2)

        graph = TopologyGraph(Direction.LR)
        graph.add_node("ANY_SRC", "Any Source", Shape.STADIUM)
        graph.add_node("NS", f"All Pods in {shown}", Shape.RECT)
        graph.add_node("ANY_DST", "Any Destination", Shape.STADIUM)
        graph.add_edge("ANY_SRC", "NS", "allowed")
        graph.add_edge("NS", "ANY_DST", "allowed")
        report.diagram("NETWORK FLOW DIAGRAM", graph.render_block())
        return report.render()

    report.section("Policy Summary")
    report.table(
        POLICY_TABLE_HEADERS,
        [
            [
                name_of(p),
                format_label_selector((p.get("spec") or {}).get("podSelector")),
                len((p.get("spec") or {}).get("ingress") or []),
                len((p.get("spec") or {}).get("egress") or []),
                ",".join(effective_policy_types(p)),
            ]
            for p in policies
        ],
    )

    uncovered: List[str] = []
    report.section("Pod Coverage")
    if pods is None:
        report.line("(pod coverage skipped)", 2)
    else:
        covered, uncovered = pod_coverage(policies, pods)
        report.key_value("Active Pods", len(covered) + len(uncovered))
        report.key_value("Covered by Policy", len(covered))
        report.key_value("No Policy Match", len(uncovered))
        for pod_name, policy_names in covered.items():
            report.line(f"{pod_name}: {', '.join(policy_names)}", 4)

    report.section("Allow/Deny Matrix")
    for policy in policies:
        report.line("")
        report.line(f"Policy: {name_of(policy)}", 2)
        report.key_value("Selects", format_label_selector((policy.get("spec") or {}).get("podSelector")), 4)
        _rule_lines(report, policy, "Ingress")
        _rule_lines(report, policy, "Egress")

    if uncovered:
        report.warning(
            f"{len(uncovered)} pods have no matching network policy - all traffic allowed by default: "
            + ", ".join(uncovered),
            action="Add a default-deny NetworkPolicy and explicit allow rules for unprotected pods",
        )

    for policy in policies:
        ref = ResourceRef.from_resource("NetworkPolicy", policy)
        if denies_all_ingress(policy):
            report.critical(
                f"Policy '{name_of(policy)}' has Ingress type but no ingress rules - "
                f"all inbound traffic DENIED to matched pods",
                subject=ref,
            )
        if denies_all_egress(policy):
            report.critical(
                f"Policy '{name_of(policy)}' has Egress type but no egress rules - "
                f"all outbound traffic DENIED from matched pods (including DNS)",
                subject=ref,
                action=f"Allow DNS egress (UDP/TCP 53) in policy '{name_of(policy)}' if pods need name resolution",
            )
        pod_selector = (policy.get("spec") or {}).get("podSelector") or {}
        if not (pod_selector.get("matchLabels") or pod_selector.get("matchExpressions")):
            report.info(f"Policy '{name_of(policy)}' selects ALL pods in namespace", subject=ref)

    report.diagram("NETWORK FLOW DIAGRAM", _flow_diagram(policies, uncovered))
    logger.info(f"Network policy analysis for {shown}: {len(policies)} policies, {report.issue_count} issue(s)")
    return report.render()


def _flow_diagram(policies: List[Dict[str, Any]], uncovered: List[str]) -> str:
    graph = TopologyGraph(Direction.LR)
    allowed = graph.add_group("allowed_traffic", "Allowed Traffic")
    edge_idx = 0
    for policy in policies:
        spec = policy.get("spec") or {}
        target = graph.add_node(
            f"target_{namespace_of(policy)}_{name_of(policy)}",
            f"Pods: {format_label_selector(spec.get('podSelector'))}",
            Shape.RECT,
            group=allowed,
        )
        if "Ingress" in effective_policy_types(policy):
            for rule in spec.get("ingress") or []:
                for peer in rule_peers(rule, "Ingress"):
                    src = graph.add_node(f"src_{name_of(policy)}_{edge_idx}", peer, Shape.STADIUM, group=allowed)
                    graph.add_edge(src, target, describe_ports(rule))
                    edge_idx += 1
        if "Egress" in effective_policy_types(policy):
            for rule in spec.get("egress") or []:
                for peer in rule_peers(rule, "Egress"):
                    dst = graph.add_node(f"dst_{name_of(policy)}_{edge_idx}", peer, Shape.STADIUM, group=allowed)
                    graph.add_edge(target, dst, describe_ports(rule))
                    edge_idx += 1

    denying = [p for p in policies if denies_all_ingress(p) or denies_all_egress(p)]
    if denying:
        denied = graph.add_group("denied_traffic", "Denied by Policy")
        deny_idx = 0
        for policy in denying:
            target = graph.add_node(
                f"deny_target_{namespace_of(policy)}_{name_of(policy)}",
                f"Pods: {format_label_selector((policy.get('spec') or {}).get('podSelector'))}",
                Shape.RECT,
                style="critical",
                group=denied,
            )
            if denies_all_ingress(policy):
                src = graph.add_node(f"deny_src_{deny_idx}", "All Inbound", Shape.STADIUM, group=denied)
                graph.add_edge(src, target, "denied", EdgeStyle.DOTTED)
                deny_idx += 1
            if denies_all_egress(policy):
                dst = graph.add_node(f"deny_dst_{deny_idx}", "All Outbound", Shape.STADIUM, group=denied)
                graph.add_edge(target, dst, "denied", EdgeStyle.DOTTED)
                deny_idx += 1

    if uncovered:
        graph.add_node("unprotected", f"No Policy: {len(uncovered)} pods", Shape.RECT, style="warning")
        graph.add_node("any_src", "Any Source", Shape.STADIUM)
        graph.add_edge("any_src", "unprotected", "allowed")

    return graph.render_block()
