"""Plain-text tables for query results and ingestion summaries."""
from __future__ import annotations

from typing import Mapping, Sequence

from distinct_cube.domain.dimensions import UNKNOWN
from distinct_cube.pipeline.aggregator import IngestSummary
from distinct_cube.query.engine import QueryRow


def _label(values: tuple) -> str:
    if not values:
        return "(total)"
    return " / ".join("?" if v is UNKNOWN else str(v) for v in values)


def format_summary(summary: IngestSummary, label: str = "Ingestion") -> str:
    lines = [
        f"=== {label} ===",
        f"Records seen:      {summary.seen:,}",
        f"Ingested:          {summary.ingested:,}",
        f"Skipped:           {summary.skipped:,}",
        f"Late upserts:      {summary.late:,}",
    ]
    for reason, n in summary.skip_reasons.most_common():
        lines.append(f"  {reason}: {n:,}")
    return "\n".join(lines)


def format_rows(
    rows: Sequence[QueryRow],
    title: str,
    exact: Mapping[tuple, int] | None = None,
) -> str:
    """Format query rows; with `exact`, add exact counts and relative error."""
    header = f"{'Group':<28} {'Estimate':>12}"
    if exact is not None:
        header += f" {'Exact':>10} {'Error':>8}"
    lines = [f"--- {title} ---", header, "-" * len(header)]
    for row in rows:
        line = f"{_label(row.labels):<28} {row.value:>12,.0f}"
        if exact is not None:
            truth = exact.get(row.labels, 0)
            err = (row.value - truth) / truth * 100 if truth else 0.0
            line += f" {truth:>10,} {err:>+7.2f}%"
        lines.append(line)
    return "\n".join(lines)


def format_memory(report: Mapping[str, int], name: str) -> str:
    return (
        f"{name}: {report['cells']:,} cells, {report['sketches']:,} sketches, "
        f"{report['sketch_bytes'] / 1024:,.0f} KB of registers"
    )
