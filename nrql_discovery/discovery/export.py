"""Export of discovery results to a per-run output directory."""

from __future__ import annotations

from datetime import UTC, datetime
import json
import logging
from pathlib import Path
from typing import Any

from nrql_discovery.discovery.state import (
    INSIGHTS,
    METRICS,
    QUERIES,
    RECOMMENDATIONS,
    RELATIONSHIPS,
    DiscoveryState,
)

logger = logging.getLogger(__name__)

COMPLETE_FILE = "discovery-complete.json"
SUMMARY_FILE = "discovery-summary.md"
QUERIES_FILE = "generated-queries.json"
DASHBOARD_FILE = "dashboard-config.json"


def _write_json(path: Path, payload: Any) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    tmp.replace(path)


def render_summary(state: DiscoveryState, *, account_id: int | None = None) -> str:
    """Markdown report: statistics, top event types, insights, recommendations."""
    stats = state.statistics
    generated = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
    lines = [
        "# Data Discovery Summary",
        "",
        f"**Account:** {account_id if account_id is not None else 'unknown'}",
        f"**Generated:** {generated}",
        f"**Status:** {state.status.value}",
        "",
        "## Statistics",
        "",
        f"- Event types discovered: {stats.schemas_discovered}",
        f"- Attributes discovered: {stats.attributes_discovered}",
        f"- Metric groups: {len(state.discoveries[METRICS])}",
        f"- Relationships: {len(state.discoveries[RELATIONSHIPS])}",
        f"- Queries issued: {stats.queries_issued}",
        f"- Queries failed: {stats.queries_failed}",
        f"- Cache hits: {stats.cache_hits}",
        f"- Estimated cost: ${stats.total_estimated_cost:.4f}",
        f"- Wall clock: {stats.wall_clock_seconds:.1f}s",
        "",
        "## Top Event Types by Volume",
        "",
    ]
    top = sorted(state.schemas, key=lambda s: s.volume, reverse=True)[:10]
    if top:
        lines += ["| Event Type | Volume | Attributes |", "| --- | ---: | ---: |"]
        lines += [f"| {s.name} | {s.volume:,} | {len(s.attributes)} |" for s in top]
    else:
        lines.append("_No event types discovered._")

    lines += ["", "## Key Insights", ""]
    insights = state.discoveries[INSIGHTS]
    lines += [f"- **{i.get('title')}**: {i.get('description')}" for i in insights] or [
        "_None._"
    ]

    lines += ["", "## Recommendations", ""]
    recommendations = state.discoveries[RECOMMENDATIONS]
    lines += [
        f"- **{r.get('title')}** (priority: {r.get('priority')}): {r.get('description')}"
        for r in recommendations
    ] or ["_None._"]

    if state.dashboard and state.dashboard.get("url"):
        lines += ["", "## Dashboard", "", state.dashboard["url"]]
    return "\n".join(lines) + "\n"


class ResultExporter:
    def __init__(self, output_dir: str | Path) -> None:
        self.output_dir = Path(output_dir)

    def run_directory(self, account_id: int | None) -> Path:
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        return self.output_dir / f"discovery-{account_id or 'unknown'}-{stamp}"

    def export(
        self,
        state: DiscoveryState,
        *,
        account_id: int | None = None,
        dashboard_config: dict[str, Any] | None = None,
    ) -> Path:
        """Write all export files and return the run directory."""
        directory = self.run_directory(account_id)
        directory.mkdir(parents=True, exist_ok=True)

        _write_json(directory / COMPLETE_FILE, state.to_dict())
        (directory / SUMMARY_FILE).write_text(
            render_summary(state, account_id=account_id), encoding="utf-8"
        )
        _write_json(
            directory / QUERIES_FILE,
            [
                {
                    "title": q.get("title"),
                    "query": q.get("query"),
                    "description": q.get("description"),
                }
                for q in state.discoveries[QUERIES]
            ],
        )
        if dashboard_config is not None:
            _write_json(directory / DASHBOARD_FILE, dashboard_config)

        logger.info("Exported discovery results to %s", directory)
        return directory
