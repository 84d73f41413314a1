import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from ..models import Finding, ResourceRef, Severity

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEVERITY_ORDER = (Severity.CRITICAL, Severity.WARNING, Severity.INFO)


def format_header(title: str) -> str:
    return f"=== {title} ==="


def format_subheader(title: str) -> str:
    return f"--- {title} ---"


def format_finding(severity: str, message: str) -> str:
    tag = severity.value if isinstance(severity, Severity) else str(severity).upper()
    return f"[{tag}] {message}"


def format_table(headers: Sequence[str], rows: Iterable[Sequence[Any]], indent: int = 2) -> List[str]:
    rows = [[str(cell) for cell in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    prefix = " " * indent
    lines = [prefix + "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)).rstrip()]
    for row in rows:
        lines.append(prefix + "  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
    return lines


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value}")
        return None


def format_age(timestamp: Any, now: Optional[datetime] = None) -> str:
    created = parse_timestamp(timestamp)
    if created is None:
        return "<unknown>"
    now = now or datetime.now(timezone.utc)
    seconds = max(int((now - created).total_seconds()), 0)
    if seconds >= 86400:
        return f"{seconds // 86400}d"
    if seconds >= 3600:
        return f"{seconds // 3600}h"
    if seconds >= 60:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def truncate_name(name: str, max_len: int) -> str:
    if len(name) <= max_len:
        return name
    return name[: max_len - 2] + ".."


def top_n(items: Iterable[T], key: Callable[[T], float], n: int) -> List[T]:
    """Largest ``n`` items by ``key``; equal keys keep their discovery order."""
    return sorted(items, key=key, reverse=True)[:n]


class Report:
    """Text report for one diagnostic run.

    Body lines are kept in the order they are written. Findings are recorded in
    discovery order and rendered in a FINDINGS block through one filtered pass per
    severity tier. Suggested actions are deduplicated, first occurrence wins.
    """

    def __init__(self, title: str):
        self.title = title
        self.findings: List[Finding] = []
        self._lines: List[str] = []
        self._actions: List[str] = []
        self._diagrams: List[Tuple[str, str]] = []

    def line(self, text: str = "", indent: int = 0) -> "Report":
        self._lines.append(" " * indent + text if text else "")
        return self

    def extend(self, lines: Iterable[str]) -> "Report":
        self._lines.extend(lines)
        return self

    def section(self, title: str) -> "Report":
        if self._lines:
            self._lines.append("")
        self._lines.append(format_subheader(title))
        return self

    def stage(self, title: str) -> "Report":
        if self._lines:
            self._lines.append("")
        self._lines.append(title)
        return self

    def key_value(self, key: str, value: Any, indent: int = 2) -> "Report":
        return self.line(f"{key}: {value}", indent)

    def table(self, headers: Sequence[str], rows: Iterable[Sequence[Any]], indent: int = 2) -> "Report":
        self._lines.extend(format_table(headers, rows, indent))
        return self

    def finding(
        self,
        severity: Severity,
        message: str,
        subject: Optional[ResourceRef] = None,
        action: Optional[str] = None,
        inline: bool = False,
        indent: int = 2,
    ) -> Finding:
        finding = Finding(severity=Severity(severity), message=message, subject=subject)
        self.findings.append(finding)
        if inline:
            self.line(finding.format(), indent)
        if action:
            self.suggest(action)
        return finding

    def critical(self, message: str, **kwargs) -> Finding:
        return self.finding(Severity.CRITICAL, message, **kwargs)

    def warning(self, message: str, **kwargs) -> Finding:
        return self.finding(Severity.WARNING, message, **kwargs)

    def info(self, message: str, **kwargs) -> Finding:
        return self.finding(Severity.INFO, message, **kwargs)

    def ok(self, message: str, indent: int = 2) -> "Report":
        return self.line(format_finding("OK", message), indent)

    def unavailable(self, what: str, error: Any = None, indent: int = 2) -> "Report":
        """Inline note for an optional lookup that failed; never counted as an issue."""
        if error is not None:
            logger.warning(f"Could not fetch {what}: {error}")
            return self.line(f"(could not fetch {what}: {error})", indent)
        return self.line(f"(could not fetch {what})", indent)

    def suggest(self, action: str) -> "Report":
        if action not in self._actions:
            self._actions.append(action)
        return self

    def diagram(self, title: str, block: str) -> "Report":
        self._diagrams.append((title, block))
        return self

    @property
    def actions(self) -> List[str]:
        return list(self._actions)

    def findings_by(self, severity: Severity) -> List[Finding]:
        return [f for f in self.findings if f.severity == severity]

    @property
    def issue_count(self) -> int:
        return len(self.findings_by(Severity.CRITICAL)) + len(self.findings_by(Severity.WARNING))

    def verdict(self, healthy_text: str) -> str:
        if self.issue_count == 0:
            return healthy_text
        return f"{self.issue_count} issue(s) found. Review findings above."

    def render_findings(self) -> List[str]:
        lines = ["FINDINGS:"]
        if not self.findings:
            lines.append("  No issues found.")
            return lines
        for severity in SEVERITY_ORDER:
            for finding in self.findings_by(severity):
                lines.append(f"  {finding.format()}")
        return lines

    def render_actions(self) -> List[str]:
        return ["SUGGESTED ACTIONS:"] + [f"{i}. {a}" for i, a in enumerate(self._actions, 1)]

    def render(self, include_findings: bool = True) -> str:
        out = [format_header(self.title), ""]
        out.extend(self._lines)

        if include_findings:
            out.append("")
            out.extend(self.render_findings())

        if self._actions:
            out.append("")
            out.extend(self.render_actions())

        for title, block in self._diagrams:
            out.append("")
            out.append(f"{title}:")
            out.append(block)

        return "\n".join(out).rstrip() + "\n"


def format_labels(labels: Optional[dict]) -> str:
    if not labels:
        return "<none>"
    return ", ".join(f"{k}={v}" for k, v in labels.items())
