"""
Markdown + Mermaid apply report generator.
"""
import re
from datetime import datetime, timezone
from typing import Dict, List

from jinja2 import Environment

from convergent import __version__
from convergent.models.report import ApplyReport, NodeOutcome, NodeReport

_OUTCOME_ICON = {
    "Applied": "🟢",
    "Destroyed": "⚪",
    "Failed": "🔴",
    "Blocked": "🟠",
    "NotStarted": "⚫",
}

_OUTCOME_STYLE = {
    NodeOutcome.APPLIED: "fill:#88cc00,color:#000",
    NodeOutcome.DESTROYED: "fill:#dddddd,color:#000",
    NodeOutcome.FAILED: "fill:#ff4444,color:#fff",
    NodeOutcome.BLOCKED: "fill:#ff8800,color:#fff",
    NodeOutcome.NOT_STARTED: "fill:#ffffff,color:#666,stroke-dasharray: 4 4",
}


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _node_shape(n: NodeReport) -> str:
    """Return a Mermaid node definition string (without ID)."""
    label = n.address.replace('"', "'")
    if n.kind == "action":
        return f'{{{{"{label}"}}}}'
    if n.kind == "local":
        return f'(["{label}"])'
    return f'["{label}"]'


def _build_mermaid(report: ApplyReport, styled: bool = True) -> str:
    lines = ["flowchart LR"]
    for n in report.nodes:
        lines.append(f"    {_sanitize_node_id(n.address)}{_node_shape(n)}")

    # Arrows follow data flow: producer --> consumer
    for consumer, producer in report.edges:
        lines.append(f"    {_sanitize_node_id(producer)} --> {_sanitize_node_id(consumer)}")

    for n in report.nodes:
        style = _OUTCOME_STYLE.get(n.outcome)
        if styled and style:
            lines.append(f"    style {_sanitize_node_id(n.address)} {style}")
    return "\n".join(lines)


def _display(value) -> str:
    text = str(value)
    return text if len(text) <= 60 else text[:57] + "..."


_TEMPLATE = """\
# Convergent {{ report.operation|capitalize }} Report

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** convergent v{{ version }}
**Status:** {{ report.status.value }}{% if report.cancelled %} (cancelled){% endif %}

---

## Summary
{% for outcome, count in counts.items() if count %}
- {{ icons[outcome] }} **{{ outcome }}**: {{ count }}{% endfor %}

{% if report.errors %}
## Errors
{% for e in report.errors %}
- {{ e }}{% endfor %}

{% endif %}
---

## Nodes

| # | Address | Kind | Outcome | Change | Attempts |
|---|---------|------|---------|--------|----------|
{% for n in nodes %}| {{ loop.index }} | `{{ n.address }}` | {{ n.kind }} | {{ icons[n.outcome.value] }} {{ n.outcome.value }} | {{ n.change or "" }} | {{ n.attempts }} |
{% endfor %}
{% if blocked %}
### Blocked

{% for n in blocked %}- `{{ n.address }}` waits on {{ n.blocked_by|join(", ") }}
{% endfor %}
{% endif %}
{% if report.outputs %}
## Outputs

| Name | Value |
|------|-------|
{% for name, value in report.outputs.items() %}| `{{ name }}` | {{ display(value) }} |
{% endfor %}
{% endif %}
## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def build_report(report: ApplyReport, source_path: str) -> str:
    counts: Dict[str, int] = report.count_by_outcome()
    blocked: List[NodeReport] = [n for n in report.nodes if n.blocked_by]

    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        report=report,
        counts=counts,
        nodes=report.nodes,
        blocked=blocked,
        icons=_OUTCOME_ICON,
        display=_display,
        mermaid=_build_mermaid(report),
    )
