"""Report generation for snapshot outcomes."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from appdriver.snapshot import SnapshotOutcome, SnapshotRecord, SnapshotStore

CANDIDATE_SUFFIXES = {".new.json": "values", ".new.png": "screenshot"}


@dataclass
class SnapshotReport:
    """Summary of the snapshots checked in one run (or pending on disk)."""

    title: str
    total: int
    new: int
    matched: int
    mismatched: int
    by_kind: dict[str, dict[str, int]]
    failures: list[dict[str, Any]]

    @property
    def passed(self) -> bool:
        return self.mismatched == 0


def collect_pending(
    directory: str | Path, pixel_tolerance: int = 0, threshold: float = 0.0
) -> list[SnapshotOutcome]:
    """Diff every ``.new`` candidate under ``directory`` against its baseline."""
    outcomes = []
    for candidate_path in sorted(Path(directory).rglob("*.new.*")):
        suffix = "".join(candidate_path.suffixes[-2:])
        kind = CANDIDATE_SUFFIXES.get(suffix)
        if kind is None:
            continue
        name = candidate_path.name[: -len(suffix)]
        baseline_path = candidate_path.with_name(name + suffix[len(".new"):])
        store = SnapshotStore(
            candidate_path.parent, pixel_tolerance=pixel_tolerance, threshold=threshold
        )
        candidate = SnapshotRecord.load(candidate_path, name, kind, state="candidate")
        if baseline_path.exists():
            baseline = SnapshotRecord.load(baseline_path, name, kind)
            diff = store.compare(candidate, baseline)
            status = "match" if diff.matches else "mismatch"
        else:
            diff = None
            status = "new"
        outcomes.append(
            SnapshotOutcome(name, kind, status, baseline_path, candidate_path, diff)
        )
    return outcomes


class ReportGenerator:
    """Generates reports from snapshot outcomes."""

    def generate(self, outcomes: list[SnapshotOutcome], title: str = "") -> SnapshotReport:
        by_kind: dict[str, dict[str, int]] = {}
        for o in outcomes:
            counts = by_kind.setdefault(o.kind, {"total": 0, "new": 0, "match": 0, "mismatch": 0})
            counts["total"] += 1
            counts[o.status] += 1

        failures = [
            {
                "name": o.name,
                "kind": o.kind,
                "baseline": str(o.baseline_path),
                "candidate": str(o.candidate_path) if o.candidate_path else None,
                "differences": [item.to_dict() for item in o.diff.items] if o.diff else [],
            }
            for o in outcomes
            if o.failed
        ]

        return SnapshotReport(
            title=title,
            total=len(outcomes),
            new=sum(1 for o in outcomes if o.status == "new"),
            matched=sum(1 for o in outcomes if o.status == "match"),
            mismatched=len(failures),
            by_kind=by_kind,
            failures=failures,
        )

    def to_markdown(self, report: SnapshotReport) -> str:
        """Render report as Markdown."""
        lines = [
            f"# Snapshot Report: {report.title}",
            "",
            f"**Checked:** {report.total}",
            f"**Matched:** {report.matched}",
            f"**New baselines:** {report.new}",
            f"**Changed:** {report.mismatched}",
        ]
        if report.by_kind:
            lines.extend([
                "",
                "## By Kind",
                "",
                "| Kind | Total | Match | New | Changed |",
                "|------|-------|-------|-----|---------|",
            ])
            for kind, data in report.by_kind.items():
                lines.append(
                    f"| {kind} | {data['total']} | {data['match']} "
                    f"| {data['new']} | {data['mismatch']} |"
                )

        if report.failures:
            lines.extend(["", "## Changed Snapshots", ""])
            for f in report.failures:
                lines.append(f"### {f['name']} ({f['kind']})")
                lines.append("")
                lines.append(f"- baseline: `{f['baseline']}`")
                lines.append(f"- candidate: `{f['candidate']}`")
                for item in f["differences"]:
                    if item["note"]:
                        lines.append(f"- `{item['path']}`: {item['note']}")
                    else:
                        lines.append(
                            f"- `{item['path']}`: `{item['baseline']!r}` -> `{item['candidate']!r}`"
                        )
                lines.append("")

        return "\n".join(lines).rstrip() + "\n"

    def to_json(self, report: SnapshotReport) -> str:
        """Render report as JSON."""
        return json.dumps(asdict(report), indent=2, default=str)
