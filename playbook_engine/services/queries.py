"""
Read Projections

Query side for dashboards: playbook listings with execution statistics,
execution lookups and current health scores. Nothing here mutates state.
"""

from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel

from playbook_engine.logging_config import get_logger
from playbook_engine.workflows.catalog import PlaybookCatalog
from playbook_engine.workflows.state import Execution, ExecutionStatus
from playbook_engine.workflows.store import ExecutionFilter, ExecutionStore

from .execution_engine import ExecutionEngine
from .health_score import HealthScore, HealthScoreMonitor

logger = get_logger(__name__)


class PlaybookSortField(str, Enum):
    NAME = "name"
    CATEGORY = "category"
    SUCCESS_RATE = "success_rate"
    EXECUTION_COUNT = "execution_count"
    LAST_RUN = "last_run"


class PlaybookStats(BaseModel):
    """Execution statistics of one playbook across all its versions."""
    execution_count: int = 0
    in_progress_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0
    success_rate: float = 0.0  # completed / finished x 100
    last_run: Optional[datetime] = None

    @classmethod
    def from_executions(cls, executions: List[Execution]) -> "PlaybookStats":
        by_status: Dict[ExecutionStatus, int] = defaultdict(int)
        for execution in executions:
            by_status[execution.status] += 1

        completed = by_status[ExecutionStatus.COMPLETED]
        failed = by_status[ExecutionStatus.FAILED]
        cancelled = by_status[ExecutionStatus.CANCELLED]
        finished = completed + failed + cancelled

        return cls(
            execution_count=len(executions),
            in_progress_count=len(executions) - finished,
            completed_count=completed,
            failed_count=failed,
            cancelled_count=cancelled,
            success_rate=round(completed / finished * 100, 1) if finished else 0.0,
            last_run=max((e.created_at for e in executions), default=None),
        )


class PlaybookSummary(BaseModel):
    """Dashboard row for a playbook (latest version)."""
    id: str
    organization_id: str
    name: str
    category: str
    description: str
    version: int
    active: bool
    node_count: int
    stats: PlaybookStats


class PlaybookQueries:
    """
    Read-only projections over the catalog, the execution store and the
    health monitor.
    """

    def __init__(
        self,
        catalog: PlaybookCatalog,
        store: ExecutionStore,
        engine: ExecutionEngine,
        monitor: Optional[HealthScoreMonitor] = None,
    ):
        self._catalog = catalog
        self._store = store
        self._engine = engine
        self._monitor = monitor

    async def list_playbooks(
        self,
        organization_id: Optional[str] = None,
        category: Optional[str] = None,
        name_contains: Optional[str] = None,
        active: Optional[bool] = None,
        sort_by: PlaybookSortField = PlaybookSortField.NAME,
        descending: bool = False,
    ) -> List[PlaybookSummary]:
        """
        List playbooks with their execution statistics.

        Args:
            organization_id: Only this organization's playbooks
            category: Exact category match
            name_contains: Case-insensitive substring of the name
            active: Only active (True) or inactive (False) playbooks
            sort_by: name, category, success_rate, execution_count or last_run
            descending: Reverse the sort order
        """
        sort_by = PlaybookSortField(sort_by)
        definitions = self._catalog.list_latest(organization_id)

        if category is not None:
            definitions = [d for d in definitions if d.category == category]
        if name_contains:
            needle = name_contains.lower()
            definitions = [d for d in definitions if needle in d.name.lower()]
        if active is not None:
            definitions = [d for d in definitions if d.active == active]

        summaries = []
        for definition in definitions:
            executions = await self._store.list(ExecutionFilter(playbook_id=definition.id))
            summaries.append(PlaybookSummary(
                id=definition.id,
                organization_id=definition.organization_id,
                name=definition.name,
                category=definition.category,
                description=definition.description,
                version=definition.version,
                active=definition.active,
                node_count=len(definition.nodes),
                stats=PlaybookStats.from_executions(executions),
            ))

        return _sort_summaries(summaries, sort_by, descending)

    async def get_execution(self, execution_id: str) -> Execution:
        """
        Get an execution by ID.

        Raises:
            NotFoundError: If the execution does not exist
        """
        return await self._engine.get(execution_id)

    async def list_executions(self, execution_filter: Optional[ExecutionFilter] = None) -> List[Execution]:
        """List executions filtered by status, customer or playbook, newest first."""
        return await self._store.list(execution_filter or ExecutionFilter())

    async def get_health_score(self, customer_id: str) -> Optional[HealthScore]:
        """
        Current health score of a customer.

        Falls back to computing it from the signal provider when none is
        cached. That computation is not cached and never alerts; use the
        monitor's `refresh` to record a score.
        """
        if self._monitor is None:
            return None
        return await self._monitor.peek(customer_id)


def _sort_summaries(
    summaries: List[PlaybookSummary],
    sort_by: PlaybookSortField,
    descending: bool,
) -> List[PlaybookSummary]:
    if sort_by == PlaybookSortField.NAME:
        return sorted(summaries, key=lambda s: s.name.lower(), reverse=descending)
    if sort_by == PlaybookSortField.CATEGORY:
        return sorted(summaries, key=lambda s: (s.category, s.name.lower()), reverse=descending)
    if sort_by == PlaybookSortField.SUCCESS_RATE:
        return sorted(summaries, key=lambda s: s.stats.success_rate, reverse=descending)
    if sort_by == PlaybookSortField.EXECUTION_COUNT:
        return sorted(summaries, key=lambda s: s.stats.execution_count, reverse=descending)

    # Playbooks that never ran go last in either direction
    ran = [s for s in summaries if s.stats.last_run is not None]
    never = [s for s in summaries if s.stats.last_run is None]
    ran.sort(key=lambda s: s.stats.last_run, reverse=descending)
    return ran + never
