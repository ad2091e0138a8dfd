from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Sequence, Tuple, TypeVar, Union

from ..util.errors import FetchError

T = TypeVar("T")

Record = Dict[str, Any]


class Severity(str, Enum):
    NOMINAL = "nominal"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


SEVERITY_RANK = {
    Severity.NOMINAL: 0,
    Severity.WARNING: 1,
    Severity.ERROR: 2,
    Severity.CRITICAL: 3,
}


@dataclass(frozen=True)
class ReportRow:
    cells: Tuple[str, ...]
    severity: Severity = Severity.NOMINAL


@dataclass
class Report:
    title: str
    columns: Tuple[str, ...]
    rows: List[ReportRow]
    generated_at: str
    summary: Dict[str, Any] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)

    def counts_by_severity(self) -> Dict[str, int]:
        out = {s.value: 0 for s in Severity}
        for row in self.rows:
            out[row.severity.value] += 1
        return out


def make_row(cells: Sequence[Any], severity: Severity = Severity.NOMINAL) -> ReportRow:
    return ReportRow(cells=tuple("" if c is None else str(c) for c in cells), severity=severity)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Failed:
    entity_id: str
    reason: str


LookupResult = Union[Ok[T], Failed]


def lookup(entity_id: str, func: Callable[[], T]) -> LookupResult[T]:
    """
    Run one per-entity secondary lookup, turning a FetchError into Failed so a
    single bad record degrades its own row instead of aborting the report.
    """
    try:
        return Ok(func())
    except FetchError as e:
        return Failed(entity_id=entity_id, reason=str(e))


@dataclass(frozen=True)
class OutputPaths:
    root: Path
    report_html: Path
    run_summary_json: Path
    run_log: Path


def resolve_output_paths(outdir: Path) -> OutputPaths:
    return OutputPaths(
        root=outdir,
        report_html=outdir / "report.html",
        run_summary_json=outdir / "run_summary.json",
        run_log=outdir / "run.log",
    )
