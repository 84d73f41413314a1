"""Mermaid text builders.

Every builder is an ordered accumulator: lines are emitted by ``render()`` in
exactly the order they were added.
"""

import re
from enum import Enum
from typing import Iterable, List, Sequence as SequenceType, Union

BR = "<br/>"
INDENT = "    "

_UNSAFE_ID_RE = re.compile(r"[^a-zA-Z0-9_]")


class Direction(str, Enum):
    TB = "TB"
    BT = "BT"
    LR = "LR"
    RL = "RL"


class Shape(str, Enum):
    RECT = "rect"
    ROUND = "round"
    STADIUM = "stadium"
    CIRCLE = "circle"
    DIAMOND = "diamond"
    HEXAGON = "hex"
    TRAPEZOID_ALT = "trapalt"
    CYLINDER = "cyl"


class EdgeStyle(str, Enum):
    SOLID = "solid"
    DOTTED = "dotted"
    THICK = "thick"


class MessageStyle(str, Enum):
    SOLID = "solid"
    DOTTED = "dotted"
    SOLID_OPEN = "solid_open"
    DOTTED_OPEN = "dotted_open"


class NotePosition(str, Enum):
    OVER = "over"
    RIGHT = "right of"
    LEFT = "left of"


SEVERITY_STYLES = {
    "critical": "fill:#ffcccc,stroke:#cc0000,stroke-width:2px",
    "warning": "fill:#ffffcc,stroke:#cccc00,stroke-width:2px",
    "healthy": "fill:#ccffcc,stroke:#00cc00,stroke-width:2px",
    "info": "fill:#cce5ff,stroke:#4a90d9,stroke-width:2px",
}

_SHAPE_FORMATS = {
    Shape.RECT: '{id}["{label}"]',
    Shape.ROUND: '{id}("{label}")',
    Shape.STADIUM: '{id}(["{label}"])',
    Shape.CIRCLE: '{id}(("{label}"))',
    Shape.DIAMOND: '{id}{{"{label}"}}',
    Shape.HEXAGON: '{id}{{{{"{label}"}}}}',
    Shape.TRAPEZOID_ALT: '{id}[/"{label}"/]',
    Shape.CYLINDER: '{id}[("{label}")]',
}

_EDGE_ARROWS = {
    EdgeStyle.SOLID: "-->",
    EdgeStyle.DOTTED: "-.->",
    EdgeStyle.THICK: "==>",
}

_MESSAGE_ARROWS = {
    MessageStyle.SOLID: "->>",
    MessageStyle.DOTTED: "-->>",
    MessageStyle.SOLID_OPEN: "-)",
    MessageStyle.DOTTED_OPEN: "--)",
}


def safe_id(value: str) -> str:
    """Turn any cluster-derived string into a valid mermaid identifier."""
    ident = _UNSAFE_ID_RE.sub("_", value or "")
    if not ident:
        return "_"
    if ident[0].isdigit():
        ident = "_" + ident
    return ident


def escape_label(label: str) -> str:
    return str(label).replace('"', "#quot;")


def wrap_block(code: str) -> str:
    return "```mermaid\n" + code.rstrip("\n") + "\n```"


def node_shape(node_id: str, label: str, shape: Shape = Shape.RECT) -> str:
    return _SHAPE_FORMATS[Shape(shape)].format(id=node_id, label=escape_label(label))


def edge_arrow(style: EdgeStyle = EdgeStyle.SOLID, label: str = "") -> str:
    arrow = _EDGE_ARROWS[EdgeStyle(style)]
    if label:
        return f"{arrow}|{escape_label(label)}|"
    return arrow


class Subgraph:

    def __init__(self, subgraph_id: str, label: str):
        self.subgraph_id = subgraph_id
        self.label = label
        self._items: List[Union[str, "Subgraph"]] = []

    def add_node(self, node_id: str, label: str, shape: Shape = Shape.RECT) -> "Subgraph":
        self._items.append(node_shape(node_id, label, shape))
        return self

    def add_edge(
        self, source: str, target: str, label: str = "", style: EdgeStyle = EdgeStyle.SOLID
    ) -> "Subgraph":
        self._items.append(f"{source} {edge_arrow(style, label)} {target}")
        return self

    def add_raw(self, line: str) -> "Subgraph":
        self._items.append(line)
        return self

    def subgraph(self, subgraph_id: str, label: str) -> "Subgraph":
        nested = Subgraph(subgraph_id, label)
        self._items.append(nested)
        return nested

    def is_empty(self) -> bool:
        return not self._items

    def render_lines(self, depth: int = 1) -> List[str]:
        prefix = INDENT * depth
        lines = [f'{prefix}subgraph {self.subgraph_id}["{escape_label(self.label)}"]']
        for item in self._items:
            if isinstance(item, Subgraph):
                lines.extend(item.render_lines(depth + 1))
            else:
                lines.append(INDENT * (depth + 1) + item)
        lines.append(f"{prefix}end")
        return lines


class Flowchart(Subgraph):

    def __init__(self, direction: Direction = Direction.TB):
        super().__init__("", "")
        self.direction = Direction(direction)
        self._styles: List[str] = []

    def add_style(self, node_id: str, severity: str) -> "Flowchart":
        style = SEVERITY_STYLES.get(severity)
        if style:
            self._styles.append(f"{INDENT}style {node_id} {style}")
        return self

    def add_raw_style(self, node_id: str, style: str) -> "Flowchart":
        self._styles.append(f"{INDENT}style {node_id} {style}")
        return self

    def render(self) -> str:
        lines = [f"flowchart {self.direction.value}"]
        for item in self._items:
            if isinstance(item, Subgraph):
                lines.extend(item.render_lines(1))
            else:
                lines.append(INDENT + item)
        lines.extend(self._styles)
        return "\n".join(lines) + "\n"

    def render_block(self) -> str:
        return wrap_block(self.render())


class Sequence:

    def __init__(self):
        self._lines: List[Union[str, "Sequence"]] = []

    def add_participant(self, participant_id: str, label: str) -> "Sequence":
        self._lines.append(f"{INDENT}participant {participant_id} as {label}")
        return self

    def add_actor(self, actor_id: str, label: str) -> "Sequence":
        self._lines.append(f"{INDENT}actor {actor_id} as {label}")
        return self

    def add_message(
        self, source: str, target: str, text: str, style: MessageStyle = MessageStyle.SOLID
    ) -> "Sequence":
        arrow = _MESSAGE_ARROWS[MessageStyle(style)]
        self._lines.append(f"{INDENT}{source}{arrow}{target}: {text}")
        return self

    def add_note(
        self, participant: str, text: str, position: NotePosition = NotePosition.OVER
    ) -> "Sequence":
        self._lines.append(f"{INDENT}Note {NotePosition(position).value} {participant}: {text}")
        return self

    def add_spanning_note(self, first: str, last: str, text: str) -> "Sequence":
        self._lines.append(f"{INDENT}Note over {first},{last}: {text}")
        return self

    def activate(self, participant: str) -> "Sequence":
        self._lines.append(f"{INDENT}activate {participant}")
        return self

    def deactivate(self, participant: str) -> "Sequence":
        self._lines.append(f"{INDENT}deactivate {participant}")
        return self

    def highlight(self, color: str) -> "Sequence":
        """Open a ``rect`` block; the returned sequence collects its contents."""
        inner = Sequence()
        self._lines.append(f"{INDENT}rect {color}")
        self._lines.append(inner)
        self._lines.append(f"{INDENT}end")
        return inner

    def add_raw(self, line: str) -> "Sequence":
        self._lines.append(INDENT + line)
        return self

    def _flatten(self) -> List[str]:
        lines = []
        for item in self._lines:
            if isinstance(item, Sequence):
                lines.extend(item._flatten())
            else:
                lines.append(item)
        return lines

    def render(self) -> str:
        return "\n".join(["sequenceDiagram"] + self._flatten()) + "\n"

    def render_block(self) -> str:
        return wrap_block(self.render())


class XYChart:

    def __init__(self, title: str):
        self.title = title
        self.x_labels: List[str] = []
        self.y_title = ""
        self.y_min = 0.0
        self.y_max = 100.0
        self._series: List[tuple] = []

    def set_x_axis(self, labels: Iterable[str]) -> "XYChart":
        self.x_labels = list(labels)
        return self

    def set_y_axis(self, title: str, minimum: float, maximum: float) -> "XYChart":
        self.y_title = title
        self.y_min = minimum
        self.y_max = maximum
        return self

    def add_bar(self, values: SequenceType[float]) -> "XYChart":
        self._series.append(("bar", list(values)))
        return self

    def add_line(self, values: SequenceType[float]) -> "XYChart":
        self._series.append(("line", list(values)))
        return self

    def render(self) -> str:
        lines = [
            "%%{init: {'theme':'neutral'}}%%",
            "xychart-beta",
            f'{INDENT}title "{escape_label(self.title)}"',
        ]
        if self.x_labels:
            quoted = ", ".join(f'"{escape_label(label)}"' for label in self.x_labels)
            lines.append(f"{INDENT}x-axis [{quoted}]")
        if self.y_title:
            lines.append(f'{INDENT}y-axis "{self.y_title}" {self.y_min:.0f} --> {self.y_max:.0f}')
        for kind, values in self._series:
            lines.append(f"{INDENT}{kind} [{', '.join(f'{v:.1f}' for v in values)}]")
        return "\n".join(lines) + "\n"

    def render_block(self) -> str:
        return wrap_block(self.render())
