import logging
from typing import Any, Dict, List, Optional, Tuple

import networkx as nx

from ..models import HealthVerdict
from .mermaid import Direction, EdgeStyle, Flowchart, Shape, Subgraph, safe_id

logger = logging.getLogger(__name__)

VERDICT_STYLES = {
    HealthVerdict.HEALTHY: "healthy",
    HealthVerdict.DEGRADED: "warning",
    HealthVerdict.CRITICAL: "critical",
}


class TopologyGraph:
    """Nodes and edges visited by one diagnostic run.

    Built and rendered inside a single call; ids pass through ``safe_id`` so the
    same resource always maps onto the same node. Node declarations and edges
    render in the order they were added. A repeated edge keeps its first
    position and collects the new label.
    """

    def __init__(self, direction: Direction = Direction.TB):
        self.direction = Direction(direction)
        self.graph = nx.DiGraph()
        self._groups: Dict[str, Dict[str, Any]] = {}
        self._order: List[Tuple[str, str]] = []
        self._edges: List[Tuple[str, str]] = []

    def add_group(self, group_id: str, label: str, parent: Optional[str] = None) -> str:
        gid = safe_id(group_id)
        if gid not in self._groups:
            self._groups[gid] = {"label": label, "parent": parent, "items": []}
            if parent:
                self._groups[parent]["items"].append(("group", gid))
            else:
                self._order.append(("group", gid))
        return gid

    def add_node(
        self,
        node_id: str,
        label: str,
        shape: Shape = Shape.RECT,
        verdict: Optional[HealthVerdict] = None,
        style: Optional[str] = None,
        group: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> str:
        nid = safe_id(node_id)
        if self.graph.has_node(nid) and "label" in self.graph.nodes[nid]:
            logger.debug(f"Topology node {nid} already present, updating attributes")
            self.graph.nodes[nid].update(label=label, shape=shape)
            if verdict is not None:
                self.graph.nodes[nid]["verdict"] = verdict
            if style is not None:
                self.graph.nodes[nid]["style"] = style
            return nid

        # an edge may have created the node without attributes; declare it now
        self.graph.add_node(
            nid, label=label, shape=shape, verdict=verdict, style=style, group=group, kind=kind
        )
        if group:
            self._groups[group]["items"].append(("node", nid))
        else:
            self._order.append(("node", nid))
        return nid

    def add_edge(
        self,
        source: str,
        target: str,
        label: str = "",
        style: EdgeStyle = EdgeStyle.SOLID,
    ) -> None:
        src, tgt = safe_id(source), safe_id(target)
        if self.graph.has_edge(src, tgt):
            data = self.graph.edges[src, tgt]
            labels = [part for part in data["label"].split(", ") if part]
            if label and label not in labels:
                data["label"] = ", ".join(labels + [label])
            return
        self.graph.add_edge(src, tgt, label=label, style=style)
        self._edges.append((src, tgt))

    def set_verdict(self, node_id: str, verdict: HealthVerdict) -> None:
        self.graph.nodes[safe_id(node_id)]["verdict"] = verdict

    def verdict(self, node_id: str) -> Optional[HealthVerdict]:
        return self.graph.nodes[safe_id(node_id)].get("verdict")

    def node_ids(self) -> List[str]:
        return list(self.graph.nodes)

    def edge_list(self) -> List[Tuple[str, str, str]]:
        return [(src, tgt, self.graph.edges[src, tgt]["label"]) for src, tgt in self._edges]

    def _fill(self, target: Subgraph, items: List[Tuple[str, str]]) -> None:
        for item_type, item_id in items:
            if item_type == "group":
                group = self._groups[item_id]
                nested = target.subgraph(item_id, group["label"])
                self._fill(nested, group["items"])
            else:
                data = self.graph.nodes[item_id]
                target.add_node(item_id, data["label"], data["shape"])

    def to_flowchart(self) -> Flowchart:
        chart = Flowchart(self.direction)
        self._fill(chart, self._order)

        for src, tgt in self._edges:
            data = self.graph.edges[src, tgt]
            chart.add_edge(src, tgt, data["label"], data["style"])

        for node_id, data in self.graph.nodes(data=True):
            severity = data.get("style") or VERDICT_STYLES.get(data.get("verdict"))
            if severity:
                chart.add_style(node_id, severity)

        return chart

    def render_block(self) -> str:
        return self.to_flowchart().render_block()
