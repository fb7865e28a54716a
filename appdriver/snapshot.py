"""Snapshot capture and comparison against checked-in baselines.

Baselines live in one directory per test file::

    tests/_snaps/[<variant>/]<test-file-stem>/<name>.json
    tests/_snaps/[<variant>/]<test-file-stem>/<name>.png

A capture that differs from its baseline is written next to it as
``<name>.new.json`` / ``<name>.new.png`` for review; baselines are only ever
replaced through :meth:`SnapshotStore.write_baseline`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from appdriver.errors import DuplicateSnapshot, SnapshotMismatch
from appdriver.images import compare_images

logger = logging.getLogger(__name__)

KINDS = ("values", "screenshot", "text", "html", "js")

NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

_MISSING = object()


@dataclass
class SnapshotRecord:
    """A named, ordered set of captured fields."""

    name: str
    kind: str
    fields: dict[str, Any]
    state: str = "candidate"

    @property
    def extension(self) -> str:
        return ".png" if self.kind == "screenshot" else ".json"

    def serialize(self) -> bytes:
        if self.kind == "screenshot":
            return self.fields["image"]
        text = json.dumps(self.fields, indent=2, ensure_ascii=False)
        return (text + "\n").encode("utf-8")

    @classmethod
    def load(cls, path: Path, name: str, kind: str, state: str = "baseline") -> SnapshotRecord:
        data = path.read_bytes()
        if kind == "screenshot":
            fields: dict[str, Any] = {"image": data}
        else:
            fields = json.loads(data.decode("utf-8"))
        return cls(name=name, kind=kind, fields=fields, state=state)


@dataclass
class DiffItem:
    """One differing field between a baseline and a candidate."""

    path: str
    baseline: Any = None
    candidate: Any = None
    note: str = ""

    def __str__(self) -> str:
        if self.note:
            return f"{self.path}: {self.note}"
        return f"{self.path}: {self.baseline!r} -> {self.candidate!r}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "baseline": self.baseline,
            "candidate": self.candidate,
            "note": self.note,
        }


@dataclass
class SnapshotDiff:
    name: str
    items: list[DiffItem] = field(default_factory=list)

    @property
    def matches(self) -> bool:
        return not self.items

    def __str__(self) -> str:
        if self.matches:
            return f"{self.name}: no differences"
        lines = [f"{self.name}: {len(self.items)} difference(s)"]
        lines.extend(f"  - {item}" for item in self.items)
        return "\n".join(lines)


@dataclass
class SnapshotOutcome:
    """Result of checking one capture: ``new``, ``match`` or ``mismatch``."""

    name: str
    kind: str
    status: str
    baseline_path: Path
    candidate_path: Path | None = None
    diff: SnapshotDiff | None = None

    @property
    def failed(self) -> bool:
        return self.status == "mismatch"


def diff_values(baseline: Any, candidate: Any, path: str = "") -> list[DiffItem]:
    """Field-by-field structural comparison of two JSON trees."""
    label = path or "$"
    if isinstance(baseline, dict) and isinstance(candidate, dict):
        items: list[DiffItem] = []
        for key in list(baseline) + [k for k in candidate if k not in baseline]:
            child = f"{path}.{key}" if path else str(key)
            old = baseline.get(key, _MISSING)
            new = candidate.get(key, _MISSING)
            if old is _MISSING:
                items.append(DiffItem(child, None, new, note=f"added with value {new!r}"))
            elif new is _MISSING:
                items.append(DiffItem(child, old, None, note=f"removed (was {old!r})"))
            else:
                items.extend(diff_values(old, new, child))
        return items
    if isinstance(baseline, list) and isinstance(candidate, list):
        items = []
        for i in range(max(len(baseline), len(candidate))):
            child = f"{label}[{i}]"
            if i >= len(baseline):
                items.append(DiffItem(child, None, candidate[i], note=f"added {candidate[i]!r}"))
            elif i >= len(candidate):
                items.append(DiffItem(child, baseline[i], None, note=f"removed {baseline[i]!r}"))
            else:
                items.extend(diff_values(baseline[i], candidate[i], child))
        return items
    if type(baseline) is not type(candidate) and not (
        isinstance(baseline, (int, float))
        and isinstance(candidate, (int, float))
        and not isinstance(baseline, bool)
        and not isinstance(candidate, bool)
    ):
        return [DiffItem(label, baseline, candidate)]
    if baseline != candidate:
        return [DiffItem(label, baseline, candidate)]
    return []


def normalize(value: Any, transforms: Iterable[Callable[[str], str]]) -> Any:
    """Apply string transforms (e.g. timestamp scrubbers) to every string leaf."""
    transforms = tuple(transforms)
    if not transforms:
        return value
    if isinstance(value, str):
        for transform in transforms:
            value = transform(value)
        return value
    if isinstance(value, list):
        return [normalize(v, transforms) for v in value]
    if isinstance(value, dict):
        return {k: normalize(v, transforms) for k, v in value.items()}
    return value


def scrub(pattern: str, replacement: str = "[scrubbed]") -> Callable[[str], str]:
    """Build a transform replacing every regex match with ``replacement``."""
    compiled = re.compile(pattern)

    def _transform(text: str) -> str:
        return compiled.sub(replacement, text)

    return _transform


class SnapshotStore:
    """Captures, compares and persists snapshots for one test file."""

    def __init__(
        self,
        directory: str | Path,
        default_name: str = "app",
        transform: Iterable[Callable[[str], str]] = (),
        pixel_tolerance: int = 0,
        threshold: float = 0.0,
    ):
        self.directory = Path(directory)
        self.default_name = default_name
        self.transform = tuple(transform)
        self.pixel_tolerance = pixel_tolerance
        self.threshold = threshold
        self.outcomes: list[SnapshotOutcome] = []
        self._used: set[str] = set()
        self._counter = 0

    def next_name(self) -> str:
        while True:
            self._counter += 1
            name = f"{self.default_name}-{self._counter:03d}"
            if name not in self._used:
                return name

    def capture(
        self, name: str | None, fields: dict[str, Any], kind: str = "values"
    ) -> SnapshotRecord:
        """Record a candidate snapshot; names must be unique within the run."""
        if kind not in KINDS:
            raise ValueError(f"Unknown snapshot kind {kind!r}; expected one of {KINDS}")
        if name is None:
            name = self.next_name()
        elif not NAME_RE.match(name):
            raise ValueError(
                f"Invalid snapshot name {name!r}: use letters, digits, '.', '_' or '-'"
            )
        if name in self._used:
            raise DuplicateSnapshot(name)
        self._used.add(name)
        if kind != "screenshot":
            fields = normalize(fields, self.transform)
        return SnapshotRecord(name=name, kind=kind, fields=dict(fields))

    def baseline_path(self, record: SnapshotRecord) -> Path:
        return self.directory / f"{record.name}{record.extension}"

    def candidate_path(self, record: SnapshotRecord) -> Path:
        return self.directory / f"{record.name}.new{record.extension}"

    def load_baseline(self, record: SnapshotRecord) -> SnapshotRecord | None:
        path = self.baseline_path(record)
        if not path.exists():
            return None
        return SnapshotRecord.load(path, record.name, record.kind)

    def compare(self, candidate: SnapshotRecord, baseline: SnapshotRecord) -> SnapshotDiff:
        diff = SnapshotDiff(candidate.name)
        if candidate.kind != baseline.kind:
            diff.items.append(
                DiffItem("kind", baseline.kind, candidate.kind, note="snapshot kind changed")
            )
            return diff
        if candidate.kind == "screenshot":
            result = compare_images(
                candidate.fields["image"],
                baseline.fields["image"],
                pixel_tolerance=self.pixel_tolerance,
            )
            if result.exceeds(self.threshold):
                diff.items.append(
                    DiffItem(
                        "image",
                        f"{result.baseline_size[0]}x{result.baseline_size[1]}",
                        f"{result.candidate_size[0]}x{result.candidate_size[1]}",
                        note=result.describe(),
                    )
                )
            return diff
        diff.items.extend(diff_values(baseline.fields, candidate.fields))
        return diff

    def write_baseline(self, record: SnapshotRecord) -> Path:
        """Accept ``record`` as the baseline and drop any pending candidate."""
        path = self.baseline_path(record)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(record.serialize())
        self.candidate_path(record).unlink(missing_ok=True)
        record.state = "baseline"
        return path

    def check(self, record: SnapshotRecord) -> SnapshotOutcome:
        """Compare a capture with its baseline, creating the baseline if absent."""
        baseline = self.load_baseline(record)
        baseline_path = self.baseline_path(record)
        if baseline is None:
            self.write_baseline(record)
            logger.info(f"New snapshot {record.name!r} written to {baseline_path}")
            outcome = SnapshotOutcome(record.name, record.kind, "new", baseline_path)
        else:
            diff = self.compare(record, baseline)
            candidate_path = self.candidate_path(record)
            if diff.matches:
                candidate_path.unlink(missing_ok=True)
                outcome = SnapshotOutcome(record.name, record.kind, "match", baseline_path)
            else:
                candidate_path.parent.mkdir(parents=True, exist_ok=True)
                candidate_path.write_bytes(record.serialize())
                logger.info(f"Snapshot {record.name!r} changed; candidate at {candidate_path}")
                outcome = SnapshotOutcome(
                    record.name, record.kind, "mismatch", baseline_path, candidate_path, diff
                )
        self.outcomes.append(outcome)
        return outcome

    def failures(self) -> list[SnapshotOutcome]:
        return [o for o in self.outcomes if o.failed]

    def raise_for_failures(self) -> None:
        failures = self.failures()
        if not failures:
            return
        lines = [f"{len(failures)} snapshot(s) differ from their baselines:"]
        for outcome in failures:
            lines.append(str(outcome.diff))
            lines.append(f"  review: {outcome.candidate_path}")
        raise SnapshotMismatch("\n".join(lines), failures)


def snapshot_dir_for(test_file: str | Path, variant: str | None = None) -> Path:
    """``<test dir>/_snaps/[<variant>/]<test-file-stem>``."""
    path = Path(test_file)
    base = path.parent / "_snaps"
    if variant:
        base = base / variant
    return base / path.stem
