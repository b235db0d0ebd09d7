"""
Fixed SPL templates for the security workspace.
Every query is assembled here from validated plan fields; the only free text
that reaches a query is a substring filter, and it always goes through
``escape_spl_string`` first.
"""

from __future__ import annotations

from typing import List

from .types import Filters, OutputSpec

BASE_SEARCH = (
    '| savedsearch "Event_Table"',
    '| eval _time=strptime(Time,"%Y-%m-%d %H:%M:%S")',
    '| rename "Recent Network Activity" as recent_network_activity "Node: Pod/Container" as node_pod_container',
)

TABLE_FIELDS = (
    "Time",
    "Severity",
    "Description",
    "Tags",
    "Details",
    "recent_network_activity",
    "node_pod_container",
)

SEVERITY_SERIES = ("critical", "warning", "info")


# ---------------------------------------------------------------------------
# Escaping
# ---------------------------------------------------------------------------

def escape_spl_string(value: str) -> str:
    """Escape a literal for use inside an SPL double-quoted string."""
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


def unescape_spl_string(value: str) -> str:
    """Inverse of :func:`escape_spl_string`."""
    out = []
    chars = iter(value)
    for ch in chars:
        if ch == "\\":
            out.append(next(chars, "\\"))
        else:
            out.append(ch)
    return "".join(out)


def _quoted(value: str) -> str:
    return f'"{escape_spl_string(value)}"'


def _like(field: str, value: str) -> str:
    return f"like({field}, {_quoted('%' + value + '%')})"


# ---------------------------------------------------------------------------
# Filter and tail segments
# ---------------------------------------------------------------------------

def build_filter_pipeline(filters: Filters) -> List[str]:
    """Return the filter lines: tag membership first, then one combined ``where``."""
    lines: List[str] = []
    if filters.tags_exact:
        lines.append('| eval __tags=split(Tags, ", ")')
        terms = " OR ".join(f"mvfind(__tags,{_quoted(tag)})>=0" for tag in filters.tags_exact)
        lines.append(f"| where ({terms})")

    clauses: List[str] = []
    if filters.severity_exact:
        levels = ",".join(_quoted(level) for level in filters.severity_exact)
        clauses.append(f"in(Severity, {levels})")
    if filters.description_like:
        clauses.append(_like("Description", filters.description_like))
    if filters.details_like:
        clauses.append(_like("Details", filters.details_like))
    if filters.node_like:
        clauses.append(_like("node_pod_container", filters.node_like))
    if filters.has_network_activity is True:
        clauses.append('recent_network_activity!="N/A"')
    elif filters.has_network_activity is False:
        clauses.append('recent_network_activity="N/A"')
    if clauses:
        lines.append("| where " + " AND ".join(clauses))
    return lines


def spl_count() -> List[str]:
    return ["| stats count as value"]


def spl_table(limit: int) -> List[str]:
    return [
        "| sort 0 -_time",
        f"| head {int(limit)}",
        "| table " + " ".join(TABLE_FIELDS),
        '| rename recent_network_activity as "Recent Network Activity" node_pod_container as "Node: Pod/Container"',
    ]


def spl_count_by(group_by: str, limit: int) -> List[str]:
    if group_by == "tag":
        return [
            '| eval tag=split(Tags, ", ")',
            "| mvexpand tag",
            "| stats count as count by tag",
            "| sort 0 -count",
            f"| head {int(limit)}",
        ]
    return [
        f"| stats count as count by {group_by}",
        "| sort 0 -count",
        f"| head {int(limit)}",
    ]


def spl_trend(span: str, split: str) -> List[str]:
    if split == "severity":
        lines = [f"| timechart span={span}", "  count as total"]
        lines += [f'  count(eval(Severity="{level.upper()}")) as {level}' for level in SEVERITY_SERIES]
        lines += [
            '| eval time=strftime(_time,"%H:%M")',
            "| fields time total " + " ".join(SEVERITY_SERIES),
        ]
        return lines
    return [
        f"| timechart span={span} count as total",
        '| eval time=strftime(_time,"%H:%M")',
        "| fields time total",
    ]


def compile_output(filters: Filters, output: OutputSpec) -> str:
    """Compile one output spec into the full SPL string."""
    lines = list(BASE_SEARCH) + build_filter_pipeline(filters)
    if output.template == "count":
        lines += spl_count()
    elif output.template == "count_by":
        lines += spl_count_by(output.group_by or "Severity", output.limit or 10)
    elif output.template == "trend":
        lines += spl_trend(output.span or "5m", output.split or "none")
    else:
        lines += spl_table(output.limit or 50)
    return "\n".join(lines)


__all__ = [
    "BASE_SEARCH",
    "TABLE_FIELDS",
    "build_filter_pipeline",
    "compile_output",
    "escape_spl_string",
    "spl_count",
    "spl_count_by",
    "spl_table",
    "spl_trend",
    "unescape_spl_string",
]
