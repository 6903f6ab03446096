"""Pytest configuration and fixtures for playbook engine tests"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from playbook_engine.services.clock import Clock
from playbook_engine.services.dispatcher import TriggerDispatcher
from playbook_engine.services.event_bus import EventBus
from playbook_engine.services.execution_engine import ExecutionEngine
from playbook_engine.workflows.catalog import PlaybookCatalog
from playbook_engine.workflows.executor import NodeExecutor, RetryPolicy
from playbook_engine.workflows.graph import EdgeSpec, NodeSpec, PlaybookDefinition
from playbook_engine.workflows.handlers import SIDE_EFFECT_NODE_TYPES, build_default_registry
from playbook_engine.workflows.nodes import NodeContext, NodeResult
from playbook_engine.workflows.store import InMemoryExecutionStore


# ==================== Test Clock ====================


class ManualTimer:
    def __init__(self, when: datetime, callback: Callable[[], Any]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    `advance` fires every due timer synchronously; `sleep` yields to the
    loop once and records the requested delay.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        self.timers: List[ManualTimer] = []
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def call_at(self, when: datetime, callback: Callable[[], Any]) -> ManualTimer:
        timer = ManualTimer(when, callback)
        self.timers.append(timer)
        return timer

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)

    def pending(self) -> List[ManualTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float) -> int:
        """Move time forward and fire due timers; returns how many fired."""
        self._now += timedelta(seconds=seconds)
        due = sorted(
            (t for t in self.timers if not t.cancelled and t.when <= self._now),
            key=lambda t: t.when,
        )
        for timer in due:
            self.timers.remove(timer)
            timer.callback()
        return len(due)


# ==================== Side-Effect Executors ====================


class RecordingExecutor:
    """
    Scripted side-effect executor.

    Returns queued `results` first (exceptions are raised), then `default`.
    When `gate` is set the call blocks until the gate opens.
    """

    def __init__(self, default: Optional[NodeResult] = None):
        self.calls: List[NodeContext] = []
        self.configs: List[Dict[str, Any]] = []
        self.results: List[Any] = []
        self.default = default or NodeResult.success()
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    async def execute(self, config: Dict[str, Any], context: NodeContext):
        self.calls.append(context)
        self.configs.append(config)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()

        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, Exception):
            raise result
        return result


# ==================== Engine Fixtures ====================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def executors() -> Dict[str, RecordingExecutor]:
    """One recording executor per side-effect node type"""
    return {node_type: RecordingExecutor() for node_type in SIDE_EFFECT_NODE_TYPES}


@pytest.fixture
def registry(executors):
    return build_default_registry(executors)


@pytest.fixture
def catalog(registry) -> PlaybookCatalog:
    return PlaybookCatalog(registry)


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def bus() -> EventBus:
    return EventBus(buffer_size=200)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Three attempts, no backoff delay"""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def node_executor(registry, retry_policy) -> NodeExecutor:
    return NodeExecutor(registry, retry_policy)


@pytest.fixture
def engine(catalog, store, node_executor, bus, clock) -> ExecutionEngine:
    return ExecutionEngine(catalog, store, node_executor, bus, clock, max_concurrent_per_org=10)


@pytest.fixture
def dispatcher(catalog, engine, store, clock) -> TriggerDispatcher:
    return TriggerDispatcher(catalog, engine, store, clock)


# ==================== Playbook Fixtures ====================


@pytest.fixture
def make_playbook() -> Callable[..., PlaybookDefinition]:
    """
    Factory for playbook definitions.

    Nodes are (id, type, config) tuples; edges are (from, to) or
    (from, to, branch) tuples.
    """
    def _make(
        nodes,
        edges=(),
        playbook_id: str = "onboarding",
        organization_id: str = "org-1",
        **attributes: Any,
    ) -> PlaybookDefinition:
        return PlaybookDefinition(
            id=playbook_id,
            organization_id=organization_id,
            name=attributes.pop("name", playbook_id.replace("-", " ").title()),
            nodes=tuple(
                NodeSpec(id=node_id, node_type=node_type, config=config)
                for node_id, node_type, config in nodes
            ),
            edges=tuple(
                EdgeSpec(source=e[0], target=e[1], branch=e[2] if len(e) > 2 else None)
                for e in edges
            ),
            **attributes,
        )

    return _make


@pytest.fixture
def onboarding_playbook(make_playbook) -> PlaybookDefinition:
    """manual trigger -> welcome email -> follow-up task"""
    return make_playbook(
        nodes=[
            ("start", "manual_trigger", {}),
            ("welcome", "send_email", {"subject": "Welcome", "template": "welcome"}),
            ("follow_up", "create_task", {"title": "Kick-off call"}),
        ],
        edges=[("start", "welcome"), ("welcome", "follow_up")],
        category="onboarding",
    )


@pytest.fixture
def branching_playbook(make_playbook) -> PlaybookDefinition:
    """
    manual trigger -> condition(payload.plan == enterprise)
        true    -> send_email
        false   -> send_sms
        default -> create_task
    """
    return make_playbook(
        playbook_id="renewal",
        nodes=[
            ("start", "manual_trigger", {}),
            ("is_enterprise", "condition", {
                "conditions": [{"field": "payload.plan", "operator": "==", "value": "enterprise"}],
            }),
            ("email", "send_email", {"subject": "Renewal", "template": "renewal"}),
            ("sms", "send_sms", {"message": "Renew today"}),
            ("task", "create_task", {"title": "Review account"}),
        ],
        edges=[
            ("start", "is_enterprise"),
            ("is_enterprise", "email", "true"),
            ("is_enterprise", "sms", "false"),
            ("is_enterprise", "task", "default"),
        ],
        category="renewal",
    )


@pytest.fixture
def wait_playbook(make_playbook) -> PlaybookDefinition:
    """manual trigger -> wait 2 hours -> check-in email"""
    return make_playbook(
        playbook_id="check-in",
        nodes=[
            ("start", "manual_trigger", {}),
            ("cool_off", "wait", {"duration": 2, "unit": "hours"}),
            ("check_in", "send_email", {"subject": "How is it going?", "template": "check_in"}),
        ],
        edges=[("start", "cool_off"), ("cool_off", "check_in")],
    )
