"""
Playbook Schedules

Cron-driven Scheduled triggers using APScheduler. Each schedule fires a
`ScheduledCause` per target customer on every tick. A playbook whose entry
node is a `schedule_trigger` supplies the cron expression itself.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel

from playbook_engine.exceptions import DispatchRejected, ValidationError
from playbook_engine.logging_config import get_logger
from playbook_engine.workflows.catalog import PlaybookCatalog

from .dispatcher import ScheduledCause, TriggerDispatcher

logger = get_logger(__name__)

SCHEDULE_TRIGGER_NODE_TYPE = "schedule_trigger"


class Schedule(BaseModel):
    """A registered cron schedule."""
    schedule_id: str
    playbook_id: str
    cron: str
    customer_ids: List[str]


class PlaybookScheduler:
    """
    Registers cron schedules and dispatches their ticks.

    Usage:
        scheduler = PlaybookScheduler(dispatcher, timezone="UTC")
        scheduler.start()
        scheduler.add_schedule("weekly-checkin", "0 9 * * MON", ["c-1", "c-2"])

    With a catalog, `cron` may be None for playbooks started by a
    schedule trigger; a cron that disagrees with the trigger is rejected.
    """

    def __init__(
        self,
        dispatcher: TriggerDispatcher,
        timezone: str = "UTC",
        scheduler: Optional[AsyncIOScheduler] = None,
        catalog: Optional[PlaybookCatalog] = None,
    ):
        self._dispatcher = dispatcher
        self._catalog = catalog
        self._timezone = timezone
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone)
        self._schedules: Dict[str, Schedule] = {}

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start the scheduler if not already running."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Playbook scheduler started", schedules=len(self._schedules))

    def shutdown(self) -> None:
        """Shutdown the scheduler without waiting for running jobs."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Playbook scheduler stopped")

    def add_schedule(
        self,
        playbook_id: str,
        cron: Optional[str],
        customer_ids: List[str],
        schedule_id: Optional[str] = None,
    ) -> Schedule:
        """
        Register a cron schedule for a playbook.

        Args:
            playbook_id: Playbook to dispatch on every tick
            cron: 5-field crontab expression; None takes it from the
                playbook's schedule trigger
            customer_ids: Customers to run the playbook against
            schedule_id: Job id; defaults to "playbook:{playbook_id}"

        Raises:
            ValidationError: If the cron expression is malformed, missing or
                disagrees with the playbook's schedule trigger
            NotFoundError: If a catalog is set and the playbook is unknown
        """
        cron = self._resolve_cron(playbook_id, cron)
        schedule_id = schedule_id or f"playbook:{playbook_id}"
        try:
            trigger = CronTrigger.from_crontab(cron, timezone=self._timezone)
        except ValueError as e:
            raise ValidationError(f"Invalid cron expression '{cron}': {e}")

        schedule = Schedule(
            schedule_id=schedule_id,
            playbook_id=playbook_id,
            cron=cron,
            customer_ids=list(customer_ids),
        )
        self._scheduler.add_job(
            self.fire,
            trigger=trigger,
            id=schedule_id,
            replace_existing=True,
            kwargs={"schedule_id": schedule_id},
        )
        self._schedules[schedule_id] = schedule

        logger.info(
            "Schedule registered",
            schedule_id=schedule_id,
            playbook_id=playbook_id,
            cron=cron,
            customers=len(schedule.customer_ids),
        )
        return schedule

    def _resolve_cron(self, playbook_id: str, cron: Optional[str]) -> str:
        configured = None
        if self._catalog is not None:
            definition = self._catalog.latest(playbook_id)
            entry = definition.node(definition.entry_node_id)
            if entry.node_type == SCHEDULE_TRIGGER_NODE_TYPE:
                configured = entry.config["cron"]

        if cron is None:
            if configured is None:
                raise ValidationError(f"Schedule for playbook {playbook_id} needs a cron expression")
            return configured

        if configured is not None and cron.split() != configured.split():
            raise ValidationError(
                f"Cron '{cron}' disagrees with the schedule trigger of playbook "
                f"{playbook_id} ('{configured}')",
                node_id=entry.id,
            )
        return cron

    def remove_schedule(self, schedule_id: str) -> bool:
        """
        Remove a schedule.

        Returns:
            True if removed, False if not found
        """
        self._schedules.pop(schedule_id, None)
        try:
            self._scheduler.remove_job(schedule_id)
        except JobLookupError:
            logger.warning("Schedule not found", schedule_id=schedule_id)
            return False
        logger.info("Schedule removed", schedule_id=schedule_id)
        return True

    def schedules(self) -> List[Schedule]:
        return list(self._schedules.values())

    def next_run_time(self, schedule_id: str) -> Optional[datetime]:
        job = self._scheduler.get_job(schedule_id)
        return job.next_run_time if job else None

    async def fire(self, schedule_id: str, tick: Optional[datetime] = None) -> int:
        """
        Dispatch one tick of a schedule.

        Returns:
            Number of executions created
        """
        schedule = self._schedules.get(schedule_id)
        if schedule is None:
            logger.warning("Tick for unknown schedule", schedule_id=schedule_id)
            return 0

        tick = tick or datetime.now(timezone.utc)
        created = 0
        for customer_id in schedule.customer_ids:
            try:
                await self._dispatcher.dispatch(ScheduledCause(
                    playbook_id=schedule.playbook_id,
                    customer_id=customer_id,
                    tick=tick,
                    cron=schedule.cron,
                ))
            except DispatchRejected as e:
                logger.warning(
                    "Scheduled dispatch rejected",
                    schedule_id=schedule_id,
                    playbook_id=schedule.playbook_id,
                    customer_id=customer_id,
                    reason=e.reason.value,
                )
                continue
            created += 1
        return created
