"""
JSON apply report generator.
"""
import json
from datetime import datetime, timezone

from convergent import __version__
from convergent.models.report import ApplyReport


def build_report(report: ApplyReport, source_path: str) -> str:
    data = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source_path,
            "tool": "convergent",
            "version": __version__,
        },
    }
    data.update(report.to_dict())
    data["edges"] = [{"consumer": c, "producer": p} for c, p in report.edges]
    return json.dumps(data, indent=2)
