"""
Interactive HTML + Mermaid apply report generator.
"""
from datetime import datetime, timezone

from jinja2 import Environment

from convergent import __version__
from convergent.models.report import ApplyReport
from convergent.reporters import markdown

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{{ report.operation|capitalize }} Report - convergent</title>
    <script src="https://cdn.jsdelivr.net/npm/mermaid/dist/mermaid.min.js"></script>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 1200px; margin: 0 auto; padding: 2rem; background: #f9f9f9; }
        header { border-bottom: 2px solid #ddd; margin-bottom: 2rem; padding-bottom: 1rem; }
        h1 { margin-bottom: 0; }
        .meta { color: #666; font-size: 0.9rem; margin-bottom: 2rem; }
        .status { font-weight: bold; padding: 0.2rem 0.6rem; border-radius: 4px; }
        .status-Success { background: #e8f5e9; color: #2e7d32; }
        .status-PartialFailure { background: #fff3e0; color: #ef6c00; }
        .status-TotalFailure, .status-CycleError, .status-ValidationError { background: #ffebee; color: #c62828; }
        .summary-cards { display: grid; grid-template-columns: repeat(auto-fit, minmax(150px, 1fr)); gap: 1rem; margin-bottom: 2rem; }
        .card { background: white; padding: 1rem; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); text-align: center; border-left: 5px solid #ddd; }
        .card.Applied { border-left-color: #4caf50; }
        .card.Failed { border-left-color: #f44336; }
        .card.Blocked { border-left-color: #ff9800; }
        .card-num { font-size: 2rem; font-weight: bold; margin-bottom: 0.2rem; }
        .card-label { color: #666; font-size: 0.8rem; text-transform: uppercase; }
        .mermaid-container { background: white; padding: 2rem; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); margin-bottom: 2rem; overflow-x: auto; }
        .node-table { width: 100%; border-collapse: collapse; background: white; border-radius: 8px; overflow: hidden; box-shadow: 0 2px 4px rgba(0,0,0,0.1); margin-bottom: 2rem; }
        .node-table th, .node-table td { padding: 0.8rem 1rem; text-align: left; border-bottom: 1px solid #eee; }
        .node-table th { background: #f5f5f5; font-weight: 600; }
        .error { color: #c62828; font-family: monospace; font-size: 0.85rem; }
        footer { margin-top: 4rem; text-align: center; color: #999; font-size: 0.8rem; }
    </style>
</head>
<body>
    <header>
        <h1>{{ report.operation|capitalize }} Report</h1>
        <div class="meta">Generated: {{ generated }} | Source: {{ source }} | convergent v{{ version }}</div>
        <span class="status status-{{ report.status.value }}">{{ report.status.value }}</span>
        {% if report.cancelled %}<span class="status">cancelled</span>{% endif %}
    </header>

    <div class="summary-cards">
        {% for outcome, count in counts.items() %}
        <div class="card {{ outcome }}"><div class="card-num">{{ count }}</div><div class="card-label">{{ outcome }}</div></div>
        {% endfor %}
    </div>

    {% if report.errors %}
    <h2>Errors</h2>
    <ul>
        {% for e in report.errors %}<li class="error">{{ e }}</li>{% endfor %}
    </ul>
    {% endif %}

    <h2>Dependency Graph</h2>
    <div class="mermaid-container">
        <div class="mermaid">
{{ mermaid }}
        </div>
    </div>

    <h2>Nodes</h2>
    <table class="node-table">
        <thead>
            <tr><th>Address</th><th>Kind</th><th>Outcome</th><th>Change</th><th>Attempts</th><th>Details</th></tr>
        </thead>
        <tbody>
            {% for n in report.nodes %}
            <tr>
                <td><strong>{{ n.address }}</strong></td>
                <td>{{ n.kind }}</td>
                <td>{{ n.outcome.value }}</td>
                <td>{{ n.change or "" }}</td>
                <td>{{ n.attempts }}</td>
                <td>
                    {% if n.error %}<div class="error">{{ n.error }}</div>{% endif %}
                    {% if n.blocked_by %}<div>blocked by {{ n.blocked_by|join(", ") }}</div>{% endif %}
                </td>
            </tr>
            {% endfor %}
        </tbody>
    </table>

    {% if report.outputs %}
    <h2>Outputs</h2>
    <table class="node-table">
        <thead><tr><th>Name</th><th>Value</th></tr></thead>
        <tbody>
            {% for name, value in report.outputs.items() %}
            <tr><td>{{ name }}</td><td>{{ value }}</td></tr>
            {% endfor %}
        </tbody>
    </table>
    {% endif %}

    <footer>convergent - declarative, convergent provisioning</footer>

    <script>
        mermaid.initialize({ startOnLoad: true, theme: 'neutral', securityLevel: 'loose' });
    </script>
</body>
</html>
"""


def build_report(report: ApplyReport, source_path: str) -> str:
    mermaid = markdown._build_mermaid(report)

    env = Environment(autoescape=True)
    template = env.from_string(_HTML_TEMPLATE)

    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        report=report,
        counts=report.count_by_outcome(),
        mermaid=mermaid,
    )
