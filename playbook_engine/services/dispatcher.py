"""
Trigger Dispatcher

Turns external stimuli into new executions:
- Manual: a user starts a playbook for a customer (permission checked)
- Webhook: an inbound payload matched to a playbook
- Scheduled: a cron tick
- Event: a domain event matched by event rules or event trigger nodes

Every cause resolves the playbook's latest published version; inactive or
unknown playbooks are rejected before any execution exists. Repeated
dispatches for the same playbook and customer are never deduplicated.
"""

import inspect
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from playbook_engine.exceptions import DispatchRejected, NotFoundError, RejectReason
from playbook_engine.logging_config import get_logger
from playbook_engine.workflows.catalog import PlaybookCatalog
from playbook_engine.workflows.handlers import evaluate_conditions
from playbook_engine.workflows.graph import PlaybookDefinition
from playbook_engine.workflows.state import Execution, TriggerInfo, TriggerKind
from playbook_engine.workflows.store import ExecutionStore

from .clock import Clock

if TYPE_CHECKING:
    from .execution_engine import ExecutionEngine

logger = get_logger(__name__)

EXECUTE_ACTION = "playbook:execute"
HEALTH_SCORE_ALERT_EVENT = "health_score_alert"
HEALTH_SCORE_DROP_EVENT = "health_score_drop"

PermissionCheck = Callable[[str, str], Union[bool, Awaitable[bool]]]


# =============================================================================
# Causes
# =============================================================================


class DomainEvent(BaseModel):
    """Something that happened to a customer, e.g. a health score alert."""
    type: str
    customer_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None


class ManualCause(BaseModel):
    actor_id: str
    playbook_id: str
    customer_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class WebhookCause(BaseModel):
    """Inbound webhook; the customer comes from `customer_id` or the payload."""
    playbook_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    customer_id: Optional[str] = None

    @model_validator(mode="after")
    def resolve_customer(self) -> "WebhookCause":
        if self.customer_id is None:
            customer_id = self.payload.get("customer_id")
            if not customer_id:
                raise ValueError("Webhook cause needs a customer_id")
            self.customer_id = str(customer_id)
        return self


class ScheduledCause(BaseModel):
    playbook_id: str
    customer_id: str
    tick: datetime
    cron: Optional[str] = None


class EventCause(BaseModel):
    playbook_id: str
    event: DomainEvent


TriggerCause = Union[ManualCause, WebhookCause, ScheduledCause, EventCause]


class EventRule(BaseModel):
    """
    Maps a domain event type to a playbook.

    `conditions` use the condition-node clause format and are evaluated
    against {"customer_id": ..., "type": ..., "payload": {...}}.
    """
    event_type: str
    playbook_id: str
    conditions: List[Dict[str, Any]] = Field(default_factory=list)

    def matches(self, event: DomainEvent) -> bool:
        if event.type != self.event_type:
            return False
        return evaluate_conditions(self.conditions, event.model_dump())


# =============================================================================
# Dispatcher
# =============================================================================


class TriggerDispatcher:
    """
    Creates executions from trigger causes.

    Usage:
        dispatcher = TriggerDispatcher(catalog, engine, store, clock)
        execution = await dispatcher.dispatch(ManualCause(
            actor_id="u-1", playbook_id="onboarding", customer_id="c-42",
        ))
    """

    def __init__(
        self,
        catalog: PlaybookCatalog,
        engine: "ExecutionEngine",
        store: ExecutionStore,
        clock: Clock,
        permission_check: Optional[PermissionCheck] = None,
        rules: Optional[List[EventRule]] = None,
    ):
        self._catalog = catalog
        self._engine = engine
        self._store = store
        self._clock = clock
        self._permission_check = permission_check
        self._rules: List[EventRule] = list(rules or [])

    @property
    def rules(self) -> List[EventRule]:
        return list(self._rules)

    def add_rule(self, rule: EventRule) -> None:
        self._rules.append(rule)

    def remove_rules(self, playbook_id: str) -> int:
        """Drop every rule pointing at a playbook; returns how many were removed."""
        before = len(self._rules)
        self._rules = [r for r in self._rules if r.playbook_id != playbook_id]
        return before - len(self._rules)

    async def dispatch(self, cause: TriggerCause) -> Execution:
        """
        Create and start an execution for a cause.

        Returns:
            The new execution, already Running

        Raises:
            DispatchRejected: If the cause cannot be honored; no execution
                is created in that case
        """
        kind, trigger, customer_id, payload = self._describe(cause)
        playbook_id = cause.playbook_id

        if isinstance(cause, ManualCause):
            await self._authorize(cause)

        try:
            definition = self._catalog.latest(playbook_id)
        except NotFoundError:
            logger.warning("Dispatch rejected", reason="playbook_not_found", playbook_id=playbook_id)
            raise DispatchRejected(
                RejectReason.PLAYBOOK_NOT_FOUND,
                f"Playbook {playbook_id} not found",
                playbook_id=playbook_id,
            )

        if not definition.active:
            logger.warning("Dispatch rejected", reason="playbook_inactive", playbook_id=playbook_id)
            raise DispatchRejected(
                RejectReason.PLAYBOOK_INACTIVE,
                f"Playbook {playbook_id} is inactive",
                playbook_id=playbook_id,
            )

        now = self._clock.now()
        execution = Execution(
            id=str(uuid4()),
            playbook_id=playbook_id,
            playbook_version=definition.version,
            organization_id=definition.organization_id,
            customer_id=customer_id,
            current_node_id=definition.entry_node_id,
            context={
                "customer_id": customer_id,
                "trigger_kind": kind.value,
                "payload": payload,
            },
            trigger=trigger,
            created_at=now,
            updated_at=now,
        )

        # Reserves a concurrency slot synchronously; raises when the org is full
        self._engine.admit(execution)
        try:
            await self._store.put(execution)
        except Exception:
            self._engine.release(execution)
            raise

        logger.info(
            "Execution dispatched",
            execution_id=execution.id,
            playbook_id=playbook_id,
            version=definition.version,
            customer_id=customer_id,
            trigger=kind.value,
        )
        return await self._engine.start(execution)

    async def dispatch_event(self, event: DomainEvent) -> List[Execution]:
        """
        Dispatch every playbook matching a domain event.

        Matches come from registered event rules and from active playbooks
        whose entry node listens for the event. Rejections are logged and
        skipped so one bad match does not block the others.
        """
        executions = []
        for playbook_id in self._matching_playbooks(event):
            try:
                execution = await self.dispatch(EventCause(playbook_id=playbook_id, event=event))
            except DispatchRejected as e:
                logger.warning(
                    "Event dispatch skipped",
                    event_type=event.type,
                    playbook_id=playbook_id,
                    customer_id=event.customer_id,
                    reason=e.reason.value,
                )
                continue
            executions.append(execution)
        return executions

    def _matching_playbooks(self, event: DomainEvent) -> List[str]:
        matched: List[str] = []

        for rule in self._rules:
            try:
                if rule.matches(event) and rule.playbook_id not in matched:
                    matched.append(rule.playbook_id)
            except (TypeError, ValueError) as e:
                logger.warning(
                    "Event rule evaluation failed",
                    event_type=event.type,
                    playbook_id=rule.playbook_id,
                    error=str(e),
                )

        for definition in self._catalog.list_latest():
            if definition.active and definition.id not in matched and _listens_for(definition, event):
                matched.append(definition.id)

        return matched

    async def _authorize(self, cause: ManualCause) -> None:
        if self._permission_check is None:
            return

        allowed = self._permission_check(cause.actor_id, EXECUTE_ACTION)
        if inspect.isawaitable(allowed):
            allowed = await allowed

        if not allowed:
            logger.warning(
                "Dispatch rejected",
                reason="permission_denied",
                actor_id=cause.actor_id,
                playbook_id=cause.playbook_id,
            )
            raise DispatchRejected(
                RejectReason.PERMISSION_DENIED,
                f"Actor {cause.actor_id} may not execute playbooks",
                actor_id=cause.actor_id,
                playbook_id=cause.playbook_id,
            )

    @staticmethod
    def _describe(cause: TriggerCause) -> Tuple[TriggerKind, TriggerInfo, str, Dict[str, Any]]:
        if isinstance(cause, ManualCause):
            return (
                TriggerKind.MANUAL,
                TriggerInfo(kind=TriggerKind.MANUAL, actor_id=cause.actor_id),
                cause.customer_id,
                dict(cause.payload),
            )
        if isinstance(cause, WebhookCause):
            return (
                TriggerKind.WEBHOOK,
                TriggerInfo(kind=TriggerKind.WEBHOOK, actor_id="webhook"),
                cause.customer_id,
                dict(cause.payload),
            )
        if isinstance(cause, ScheduledCause):
            detail = {"tick": cause.tick.isoformat(), "cron": cause.cron}
            return (
                TriggerKind.SCHEDULED,
                TriggerInfo(kind=TriggerKind.SCHEDULED, actor_id="scheduler", detail=detail),
                cause.customer_id,
                detail,
            )
        if isinstance(cause, EventCause):
            return (
                TriggerKind.EVENT,
                TriggerInfo(
                    kind=TriggerKind.EVENT,
                    actor_id="event",
                    detail={"event_type": cause.event.type},
                ),
                cause.event.customer_id,
                {"event_type": cause.event.type, **cause.event.payload},
            )
        raise TypeError(f"Unsupported trigger cause: {type(cause).__name__}")


def _listens_for(definition: PlaybookDefinition, event: DomainEvent) -> bool:
    """Whether a playbook's entry node is an event or health score trigger for `event`."""
    if definition.entry_node_id is None:
        return False
    entry = definition.node(definition.entry_node_id)

    if entry.node_type == "event_trigger":
        return entry.config.get("event_type") == event.type

    if entry.node_type == "health_score_trigger":
        # Without its own threshold the trigger follows the monitor's alerts
        threshold = entry.config.get("threshold")
        if threshold is None:
            return event.type == HEALTH_SCORE_ALERT_EVENT
        if event.type != HEALTH_SCORE_DROP_EVENT:
            return False
        score = event.payload.get("score")
        return score is not None and crossed_below(score, event.payload.get("previous_score"), threshold)

    return False


def crossed_below(score: float, previous: Optional[float], threshold: float) -> bool:
    """Whether a score moved below `threshold` from at or above it, or was first seen below it."""
    return score < threshold and (previous is None or previous >= threshold)
