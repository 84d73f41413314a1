from .mermaid import (
    BR,
    Direction,
    EdgeStyle,
    Flowchart,
    MessageStyle,
    NotePosition,
    Sequence,
    Shape,
    XYChart,
    safe_id,
)
from .report import Report, format_age, format_finding, format_table, top_n, truncate_name
from .topology_graph import TopologyGraph

__all__ = [
    "BR",
    "Direction",
    "EdgeStyle",
    "Flowchart",
    "MessageStyle",
    "NotePosition",
    "Report",
    "Sequence",
    "Shape",
    "TopologyGraph",
    "XYChart",
    "format_age",
    "format_finding",
    "format_table",
    "safe_id",
    "top_n",
    "truncate_name",
]
