"""Unit tests for the PlaybookEngine container"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from playbook_engine.config import Settings
from playbook_engine.container import PlaybookEngine
from playbook_engine.exceptions import DispatchRejected, EngineInvariantViolation, RejectReason, ValidationError
from playbook_engine.services.dispatcher import DomainEvent, EventRule
from playbook_engine.services.event_bus import EventType
from playbook_engine.services.health_score import CustomerSignal
from playbook_engine.workflows.state import ExecutionStatus
from playbook_engine.workflows.store import RedisExecutionStore


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        MAX_CONCURRENT_EXECUTIONS_PER_ORG=5,
        RETRY_BASE_DELAY=0.0,
        RETRY_MAX_DELAY=0.0,
        EVENT_BUFFER_SIZE=50,
        PLAYBOOK_VERSION_RETENTION=1,
        LOG_FORMAT="text",
    )


@pytest.fixture
def signal_provider():
    provider = MagicMock()
    provider.get_signal = AsyncMock(return_value=CustomerSignal(usage_pct=0, satisfaction_score=0))
    return provider


@pytest_asyncio.fixture
async def app(settings, executors, clock, signal_provider):
    """Started engine container, shut down after the test"""
    container = PlaybookEngine.create(
        settings=settings,
        executors=executors,
        clock=clock,
        signal_provider=signal_provider,
    )
    await container.start()
    yield container
    await container.shutdown()


class TestWiring:
    """Tests for component construction"""

    def test_settings_flow_into_components(self, settings, executors, clock):
        container = PlaybookEngine.create(settings=settings, executors=executors, clock=clock)

        assert container.engine.max_concurrent_per_org == 5
        assert container.executor.retry_policy.max_delay == 0.0
        assert container.registry.frozen
        assert container.monitor is None

    def test_redis_store_from_settings(self, executors, clock):
        settings = Settings(_env_file=None, EXECUTION_STORE="redis", REDIS_URL="redis://cache:6379/2")
        container = PlaybookEngine.create(settings=settings, executors=executors, clock=clock)

        assert isinstance(container.store, RedisExecutionStore)

    @pytest.mark.asyncio
    async def test_lifecycle(self, settings, executors, clock):
        container = PlaybookEngine.create(settings=settings, executors=executors, clock=clock)

        await container.start()
        await container.start()
        assert container.is_started
        assert container.scheduler.running

        await container.shutdown()
        await container.shutdown()
        assert container.is_shutdown

    @pytest.mark.asyncio
    async def test_health_score_requires_provider(self, settings, clock):
        container = PlaybookEngine.create(settings=settings, clock=clock)

        with pytest.raises(RuntimeError, match="signal provider"):
            await container.refresh_health_score("c-1")
        assert await container.get_health_score("c-1") is None


class TestCommandsAndQueries:
    """End-to-end flows through the container surface"""

    @pytest.mark.asyncio
    async def test_publish_dispatch_and_observe(self, app, onboarding_playbook):
        subscription = app.subscribe(event_types=[EventType.PLAYBOOK_COMPLETED])

        assert app.publish(onboarding_playbook) == 1
        execution = await app.dispatch_manual("u-1", "onboarding", "c-1", {"plan": "pro"})
        await app.engine.wait_idle()

        completed = await app.get_execution(execution.id)
        event = subscription.get_nowait()

        assert completed.status == ExecutionStatus.COMPLETED
        assert event.source == execution.id
        assert event.payload["path"] == ["start", "welcome", "follow_up"]

        summaries = await app.list_playbooks()
        assert summaries[0].stats.success_rate == 100.0
        assert len(await app.list_executions()) == 1

    @pytest.mark.asyncio
    async def test_retention_keeps_pinned_versions(self, app, wait_playbook):
        app.publish(wait_playbook)
        parked = await app.dispatch_manual("u-1", "check-in", "c-1")
        await app.engine.wait_idle()

        app.publish(wait_playbook)
        app.publish(wait_playbook)

        assert app.catalog.versions("check-in") == [1, 3]
        assert app.engine.is_parked(parked.id)

    @pytest.mark.asyncio
    async def test_pause_resume_cancel(self, app, clock, wait_playbook):
        app.publish(wait_playbook)
        execution = await app.dispatch_manual("u-1", "check-in", "c-1")
        await app.engine.wait_idle()

        paused = await app.pause(execution.id)
        assert paused.status == ExecutionStatus.PAUSED

        resumed = await app.resume(execution.id)
        assert resumed.status == ExecutionStatus.RUNNING

        cancelled = await app.cancel(execution.id)
        assert cancelled.status == ExecutionStatus.CANCELLED
        with pytest.raises(EngineInvariantViolation):
            await app.cancel(execution.id)

    @pytest.mark.asyncio
    async def test_signal_skips_wait(self, app, executors, wait_playbook):
        app.publish(wait_playbook)
        execution = await app.dispatch_manual("u-1", "check-in", "c-1")
        await app.engine.wait_idle()

        await app.signal(execution.id)
        await app.engine.wait_idle()

        assert (await app.get_execution(execution.id)).status == ExecutionStatus.COMPLETED
        assert len(executors["send_email"].calls) == 1

    @pytest.mark.asyncio
    async def test_set_active(self, app, onboarding_playbook):
        app.publish(onboarding_playbook)
        app.set_active("onboarding", False)

        with pytest.raises(DispatchRejected) as exc_info:
            await app.dispatch_manual("u-1", "onboarding", "c-1")
        assert exc_info.value.reason == RejectReason.PLAYBOOK_INACTIVE

    @pytest.mark.asyncio
    async def test_add_schedule(self, app, onboarding_playbook):
        app.publish(onboarding_playbook)
        schedule = app.add_schedule("onboarding", "0 9 * * MON", ["c-1"])

        assert app.scheduler.next_run_time(schedule.schedule_id) is not None

    @pytest.mark.asyncio
    async def test_add_schedule_from_trigger(self, app, make_playbook):
        app.publish(make_playbook(
            playbook_id="weekly-checkin",
            nodes=[("start", "schedule_trigger", {"cron": "0 9 * * MON"})],
        ))

        schedule = app.add_schedule("weekly-checkin", None, ["c-1"])

        assert schedule.cron == "0 9 * * MON"
        with pytest.raises(ValidationError):
            app.add_schedule("weekly-checkin", "0 10 * * MON", ["c-1"])

    @pytest.mark.asyncio
    async def test_health_alert_starts_playbook(self, app, executors, make_playbook):
        app.publish(make_playbook(
            playbook_id="at-risk",
            nodes=[
                ("start", "health_score_trigger", {"threshold": 40}),
                ("notify", "send_slack", {"channel": "#cs", "message": "At risk"}),
            ],
            edges=[("start", "notify")],
        ))

        score = await app.refresh_health_score("c-9")
        await app.engine.wait_idle()

        assert score.score == 30
        executions = await app.list_executions()
        assert [(e.playbook_id, e.customer_id) for e in executions] == [("at-risk", "c-9")]
        assert len(executors["send_slack"].calls) == 1

    @pytest.mark.asyncio
    async def test_dispatch_event_with_rule(self, app, onboarding_playbook):
        app.publish(onboarding_playbook)
        app.dispatcher.add_rule(EventRule(event_type="signup", playbook_id="onboarding"))

        executions = await app.dispatch_event(DomainEvent(type="signup", customer_id="c-4"))
        await app.engine.wait_idle()

        assert [e.customer_id for e in executions] == ["c-4"]
