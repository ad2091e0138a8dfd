from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, TypeVar, runtime_checkable

from ..graph.clients import ApiClient
from ..normalize.schema import Report, ReportRow
from ..util.concurrency import parallel_map_ordered
from ..util.rich_progress import RunProgress

if TYPE_CHECKING:
    from ..config import RunConfig

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class RunContext:
    """
    Everything one runbook execution needs. `now` is captured once per run and
    used for every age/expiry comparison.
    """

    cfg: "RunConfig"
    graph: ApiClient
    now: datetime
    management: Optional[ApiClient] = None
    progress: RunProgress = field(default_factory=lambda: RunProgress(enabled=False))

    def lookup_all(self, description: str, items: Sequence[T], func: Callable[[T], R]) -> List[R]:
        """
        Run a per-entity secondary lookup for every item, in input order.
        Sequential unless workers_lookup > 1.
        """
        self.progress.start_lookups(description, total=len(items))

        def _one(item: T) -> R:
            result = func(item)
            self.progress.advance()
            return result

        return parallel_map_ordered(_one, items, max_workers=self.cfg.workers_lookup)


@runtime_checkable
class Runbook(Protocol):
    """
    Runbook contract: fetch, classify and return a Report.
    Implementations must not send mail; delivery belongs to the caller.
    """

    name: str
    title: str
    required_settings: Tuple[str, ...]

    def build_report(self, ctx: RunContext) -> Report:
        ...


def new_report(
    ctx: RunContext,
    title: str,
    columns: Iterable[str],
    rows: List[ReportRow],
    *,
    summary: Optional[Dict[str, Any]] = None,
    notes: Optional[List[str]] = None,
) -> Report:
    return Report(
        title=title,
        columns=tuple(columns),
        rows=rows,
        generated_at=ctx.now.strftime("%Y-%m-%d %H:%M UTC"),
        summary=dict(summary or {}),
        notes=list(notes or []),
    )
