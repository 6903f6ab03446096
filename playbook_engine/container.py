"""
Engine Container

Wires every component of the playbook engine together and exposes the
command / query / subscription surface used by dashboards and editors.
Replaces global state with a testable, injectable container.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional

from playbook_engine.config import Settings, get_settings
from playbook_engine.logging_config import get_logger, setup_logging
from playbook_engine.services.clock import AsyncioClock, Clock
from playbook_engine.services.dispatcher import (
    DomainEvent,
    EventRule,
    ManualCause,
    PermissionCheck,
    TriggerCause,
    TriggerDispatcher,
)
from playbook_engine.services.event_bus import EventBus, EventType, Subscription
from playbook_engine.services.execution_engine import ExecutionEngine
from playbook_engine.services.health_score import HealthScore, HealthScoreMonitor, SignalProvider
from playbook_engine.services.queries import PlaybookQueries, PlaybookSortField, PlaybookSummary
from playbook_engine.services.schedules import PlaybookScheduler, Schedule
from playbook_engine.workflows.catalog import PlaybookCatalog
from playbook_engine.workflows.executor import NodeExecutor, RetryPolicy
from playbook_engine.workflows.graph import PlaybookDefinition
from playbook_engine.workflows.handlers import SideEffectExecutor, build_default_registry
from playbook_engine.workflows.nodes import NodeTypeRegistry
from playbook_engine.workflows.state import Execution
from playbook_engine.workflows.store import (
    ExecutionFilter,
    ExecutionStore,
    InMemoryExecutionStore,
    RedisExecutionStore,
)

logger = get_logger(__name__)


@dataclass
class PlaybookEngine:
    """
    Playbook engine container.

    Holds all components and provides a single point of access.

    Usage:
        engine = PlaybookEngine.create(executors={"send_email": mailer})
        await engine.start()
        version = engine.publish(definition)
        execution = await engine.dispatch_manual("u-1", definition.id, "c-42")
        await engine.shutdown()
    """

    settings: Settings
    registry: NodeTypeRegistry
    catalog: PlaybookCatalog
    store: ExecutionStore
    bus: EventBus
    clock: Clock
    executor: NodeExecutor
    engine: ExecutionEngine
    dispatcher: TriggerDispatcher
    scheduler: PlaybookScheduler
    queries: PlaybookQueries
    monitor: Optional[HealthScoreMonitor] = None

    # State
    _started: bool = field(default=False, repr=False)
    _shutdown: bool = field(default=False, repr=False)

    @classmethod
    def create(
        cls,
        settings: Optional[Settings] = None,
        executors: Optional[Mapping[str, SideEffectExecutor]] = None,
        store: Optional[ExecutionStore] = None,
        clock: Optional[Clock] = None,
        signal_provider: Optional[SignalProvider] = None,
        permission_check: Optional[PermissionCheck] = None,
        rules: Optional[List[EventRule]] = None,
        registry: Optional[NodeTypeRegistry] = None,
    ) -> "PlaybookEngine":
        """
        Build a fully wired engine.

        Args:
            settings: Engine settings (default: process settings)
            executors: Side-effect executors keyed by node type
            store: Execution store (default: per EXECUTION_STORE)
            clock: Clock (default: asyncio wall clock)
            signal_provider: Customer signal source; enables health scoring
            permission_check: hasPermission(actor, action) predicate
            rules: Initial event rules
            registry: Pre-built node registry (overrides `executors`)
        """
        settings = settings or get_settings()
        registry = registry or build_default_registry(executors)
        catalog = PlaybookCatalog(registry)
        if store is None:
            if settings.EXECUTION_STORE == "redis":
                store = RedisExecutionStore(redis_url=settings.REDIS_URL)
            else:
                store = InMemoryExecutionStore()
        clock = clock or AsyncioClock()
        bus = EventBus(buffer_size=settings.EVENT_BUFFER_SIZE)

        executor = NodeExecutor(registry, RetryPolicy(
            max_attempts=settings.NODE_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        ))
        engine = ExecutionEngine(
            catalog,
            store,
            executor,
            bus,
            clock,
            max_concurrent_per_org=settings.MAX_CONCURRENT_EXECUTIONS_PER_ORG,
        )
        dispatcher = TriggerDispatcher(
            catalog,
            engine,
            store,
            clock,
            permission_check=permission_check,
            rules=rules,
        )

        monitor = None
        if signal_provider is not None:
            monitor = HealthScoreMonitor(
                signal_provider,
                bus,
                clock,
                dispatcher=dispatcher,
                threshold=settings.HEALTH_SCORE_ALERT_THRESHOLD,
            )

        return cls(
            settings=settings,
            registry=registry,
            catalog=catalog,
            store=store,
            bus=bus,
            clock=clock,
            executor=executor,
            engine=engine,
            dispatcher=dispatcher,
            scheduler=PlaybookScheduler(dispatcher, timezone=settings.SCHEDULER_TIMEZONE, catalog=catalog),
            queries=PlaybookQueries(catalog, store, engine, monitor),
            monitor=monitor,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Configure logging, connect the execution store and start the cron scheduler."""
        if self._started:
            logger.warning("Engine already started, skipping")
            return

        setup_logging(
            log_level=self.settings.LOG_LEVEL,
            log_format=self.settings.LOG_FORMAT,
            app_name=self.settings.APP_NAME,
            environment=self.settings.ENVIRONMENT,
        )
        if isinstance(self.store, RedisExecutionStore):
            await self.store.connect()
        self.scheduler.start()
        self._started = True
        logger.info(
            "Playbook engine started",
            environment=self.settings.ENVIRONMENT,
            node_types=len(self.registry),
        )

    async def shutdown(self) -> None:
        """
        Gracefully shutdown all services.
        """
        if self._shutdown:
            return

        logger.info("Shutting down playbook engine")

        try:
            self.scheduler.shutdown()
        except Exception as e:
            logger.error("Error stopping scheduler", error=str(e))

        await self.engine.shutdown()

        if isinstance(self.store, RedisExecutionStore):
            await self.store.close()

        self._shutdown = True
        logger.info("Playbook engine shutdown complete")

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    # =========================================================================
    # Commands
    # =========================================================================

    def publish(self, definition: PlaybookDefinition) -> int:
        """
        Publish a new playbook version, then apply version retention.

        Returns:
            The assigned version number

        Raises:
            ValidationError: If the definition is invalid
        """
        version = self.catalog.publish(definition)
        retention = self.settings.PLAYBOOK_VERSION_RETENTION
        if retention:
            self.catalog.prune(
                definition.id,
                keep_last=retention,
                pinned=self.engine.pinned_versions(definition.id),
            )
        return version

    def set_active(self, playbook_id: str, active: bool) -> PlaybookDefinition:
        return self.catalog.set_active(playbook_id, active)

    async def dispatch(self, cause: TriggerCause) -> Execution:
        return await self.dispatcher.dispatch(cause)

    async def dispatch_manual(
        self,
        actor_id: str,
        playbook_id: str,
        customer_id: str,
        payload: Optional[dict] = None,
    ) -> Execution:
        """
        Start a playbook for a customer on behalf of a user.

        Raises:
            DispatchRejected: If the playbook cannot be started
        """
        return await self.dispatcher.dispatch(ManualCause(
            actor_id=actor_id,
            playbook_id=playbook_id,
            customer_id=customer_id,
            payload=payload or {},
        ))

    async def dispatch_event(self, event: DomainEvent) -> List[Execution]:
        return await self.dispatcher.dispatch_event(event)

    async def pause(self, execution_id: str) -> Execution:
        return await self.engine.pause(execution_id)

    async def resume(self, execution_id: str) -> Execution:
        return await self.engine.resume(execution_id)

    async def cancel(self, execution_id: str) -> Execution:
        return await self.engine.cancel(execution_id)

    async def signal(self, execution_id: str) -> Execution:
        return await self.engine.signal(execution_id)

    def add_schedule(self, playbook_id: str, cron: Optional[str], customer_ids: List[str]) -> Schedule:
        """Schedule a playbook; a None cron comes from its schedule trigger."""
        return self.scheduler.add_schedule(playbook_id, cron, customer_ids)

    async def refresh_health_score(self, customer_id: str) -> HealthScore:
        """
        Recompute a customer's health score.

        Raises:
            RuntimeError: If no signal provider was configured
        """
        if self.monitor is None:
            raise RuntimeError("Health scoring requires a signal provider")
        return await self.monitor.refresh(customer_id)

    # =========================================================================
    # Queries and subscription
    # =========================================================================

    async def list_playbooks(
        self,
        organization_id: Optional[str] = None,
        category: Optional[str] = None,
        name_contains: Optional[str] = None,
        active: Optional[bool] = None,
        sort_by: PlaybookSortField = PlaybookSortField.NAME,
        descending: bool = False,
    ) -> List[PlaybookSummary]:
        return await self.queries.list_playbooks(
            organization_id=organization_id,
            category=category,
            name_contains=name_contains,
            active=active,
            sort_by=sort_by,
            descending=descending,
        )

    async def get_execution(self, execution_id: str) -> Execution:
        return await self.queries.get_execution(execution_id)

    async def list_executions(self, execution_filter: Optional[ExecutionFilter] = None) -> List[Execution]:
        return await self.queries.list_executions(execution_filter)

    async def get_health_score(self, customer_id: str) -> Optional[HealthScore]:
        return await self.queries.get_health_score(customer_id)

    def subscribe(
        self,
        event_types: Optional[Iterable[EventType]] = None,
        replay: bool = True,
    ) -> Subscription:
        """Open a live event feed; recent events are replayed first."""
        return self.bus.subscribe(event_types=event_types, replay=replay)
