"""Unit tests for TriggerDispatcher"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError as PydanticValidationError

from playbook_engine.exceptions import DispatchRejected, RejectReason
from playbook_engine.services.dispatcher import (
    DomainEvent,
    EventCause,
    EventRule,
    ManualCause,
    ScheduledCause,
    TriggerDispatcher,
    WebhookCause,
)
from playbook_engine.workflows.state import ExecutionStatus, TriggerKind


@pytest.fixture
def alert_playbook(make_playbook):
    """health score trigger (threshold 30) -> slack alert"""
    return make_playbook(
        playbook_id="at-risk",
        nodes=[
            ("start", "health_score_trigger", {"threshold": 30}),
            ("notify", "send_slack", {"channel": "#cs-alerts", "message": "Customer at risk"}),
        ],
        edges=[("start", "notify")],
        category="retention",
    )


@pytest.fixture
def renewal_event_playbook(make_playbook):
    """event trigger (renewal_due) -> task"""
    return make_playbook(
        playbook_id="renewal-due",
        nodes=[
            ("start", "event_trigger", {"event_type": "renewal_due"}),
            ("task", "create_task", {"title": "Prepare renewal"}),
        ],
        edges=[("start", "task")],
    )


# =============================================================================
# Rejections
# =============================================================================


class TestDispatchRejections:
    """Tests for causes that must not create executions"""

    @pytest.mark.asyncio
    async def test_inactive_playbook(self, catalog, dispatcher, store, onboarding_playbook):
        catalog.publish(onboarding_playbook)
        catalog.set_active("onboarding", False)

        with pytest.raises(DispatchRejected) as exc_info:
            await dispatcher.dispatch(ManualCause(actor_id="u-1", playbook_id="onboarding", customer_id="c-1"))

        assert exc_info.value.reason == RejectReason.PLAYBOOK_INACTIVE
        assert exc_info.value.status_code == 409
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_published_inactive(self, catalog, dispatcher, store, onboarding_playbook):
        catalog.publish(onboarding_playbook.model_copy(update={"active": False}))

        with pytest.raises(DispatchRejected) as exc_info:
            await dispatcher.dispatch(WebhookCause(playbook_id="onboarding", payload={"customer_id": "c-1"}))

        assert exc_info.value.reason == RejectReason.PLAYBOOK_INACTIVE
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_unknown_playbook(self, dispatcher, store):
        with pytest.raises(DispatchRejected) as exc_info:
            await dispatcher.dispatch(ManualCause(actor_id="u-1", playbook_id="nope", customer_id="c-1"))

        assert exc_info.value.reason == RejectReason.PLAYBOOK_NOT_FOUND
        assert exc_info.value.to_dict()["details"]["playbook_id"] == "nope"
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_permission_denied(self, catalog, engine, store, clock, onboarding_playbook):
        check = MagicMock(return_value=False)
        dispatcher = TriggerDispatcher(catalog, engine, store, clock, permission_check=check)
        catalog.publish(onboarding_playbook)

        with pytest.raises(DispatchRejected) as exc_info:
            await dispatcher.dispatch(ManualCause(actor_id="u-7", playbook_id="onboarding", customer_id="c-1"))

        assert exc_info.value.reason == RejectReason.PERMISSION_DENIED
        check.assert_called_once_with("u-7", "playbook:execute")
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_async_permission_check(self, catalog, engine, store, clock, onboarding_playbook):
        check = AsyncMock(return_value=True)
        dispatcher = TriggerDispatcher(catalog, engine, store, clock, permission_check=check)
        catalog.publish(onboarding_playbook)

        execution = await dispatcher.dispatch(
            ManualCause(actor_id="u-1", playbook_id="onboarding", customer_id="c-1")
        )

        check.assert_awaited_once_with("u-1", "playbook:execute")
        assert execution.status == ExecutionStatus.RUNNING
        await engine.wait_idle()

    @pytest.mark.asyncio
    async def test_permission_not_consulted_for_scheduled(self, catalog, engine, store, clock, onboarding_playbook):
        check = MagicMock(return_value=False)
        dispatcher = TriggerDispatcher(catalog, engine, store, clock, permission_check=check)
        catalog.publish(onboarding_playbook)

        await dispatcher.dispatch(ScheduledCause(
            playbook_id="onboarding",
            customer_id="c-1",
            tick=datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc),
        ))

        check.assert_not_called()
        await engine.wait_idle()

    @pytest.mark.asyncio
    async def test_store_failure_releases_slot(self, catalog, engine, clock, onboarding_playbook):
        store = MagicMock()
        store.put = AsyncMock(side_effect=ConnectionError("redis down"))
        dispatcher = TriggerDispatcher(catalog, engine, store, clock)
        catalog.publish(onboarding_playbook)

        with pytest.raises(ConnectionError):
            await dispatcher.dispatch(ManualCause(actor_id="u-1", playbook_id="onboarding", customer_id="c-1"))

        assert engine.active_count("org-1") == 0


# =============================================================================
# Causes
# =============================================================================


class TestCauses:
    """Tests for how each cause shapes the new execution"""

    @pytest.mark.asyncio
    async def test_manual(self, catalog, dispatcher, engine, onboarding_playbook):
        catalog.publish(onboarding_playbook)

        execution = await dispatcher.dispatch(ManualCause(
            actor_id="u-1", playbook_id="onboarding", customer_id="c-1", payload={"source": "dashboard"},
        ))

        assert execution.trigger.kind == TriggerKind.MANUAL
        assert execution.trigger.actor_id == "u-1"
        assert execution.playbook_version == 1
        assert execution.organization_id == "org-1"
        assert execution.current_node_id == "start"
        assert execution.context == {
            "customer_id": "c-1",
            "trigger_kind": "manual",
            "payload": {"source": "dashboard"},
        }
        await engine.wait_idle()

    @pytest.mark.asyncio
    async def test_webhook_customer_from_payload(self, catalog, dispatcher, engine, onboarding_playbook):
        catalog.publish(onboarding_playbook)

        execution = await dispatcher.dispatch(WebhookCause(
            playbook_id="onboarding", payload={"customer_id": "c-5", "event": "signup"},
        ))

        assert execution.customer_id == "c-5"
        assert execution.trigger.kind == TriggerKind.WEBHOOK
        assert execution.context["payload"]["event"] == "signup"
        await engine.wait_idle()

    def test_webhook_without_customer(self):
        with pytest.raises(PydanticValidationError):
            WebhookCause(playbook_id="onboarding", payload={"event": "signup"})

    @pytest.mark.asyncio
    async def test_scheduled(self, catalog, dispatcher, engine, onboarding_playbook):
        catalog.publish(onboarding_playbook)
        tick = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

        execution = await dispatcher.dispatch(ScheduledCause(
            playbook_id="onboarding", customer_id="c-1", tick=tick, cron="0 9 * * MON",
        ))

        assert execution.trigger.kind == TriggerKind.SCHEDULED
        assert execution.trigger.detail == {"tick": tick.isoformat(), "cron": "0 9 * * MON"}
        await engine.wait_idle()

    @pytest.mark.asyncio
    async def test_uses_latest_version(self, catalog, dispatcher, engine, onboarding_playbook):
        catalog.publish(onboarding_playbook)
        catalog.publish(onboarding_playbook)

        execution = await dispatcher.dispatch(
            ManualCause(actor_id="u-1", playbook_id="onboarding", customer_id="c-1")
        )

        assert execution.playbook_version == 2
        await engine.wait_idle()


# =============================================================================
# Domain events
# =============================================================================


class TestDispatchEvent:
    """Tests for event rules and event trigger nodes"""

    @pytest.mark.asyncio
    async def test_rule_with_conditions(self, catalog, engine, store, clock, onboarding_playbook):
        dispatcher = TriggerDispatcher(catalog, engine, store, clock, rules=[
            EventRule(
                event_type="plan_upgraded",
                playbook_id="onboarding",
                conditions=[{"field": "payload.plan", "operator": "==", "value": "enterprise"}],
            ),
        ])
        catalog.publish(onboarding_playbook)

        skipped = await dispatcher.dispatch_event(
            DomainEvent(type="plan_upgraded", customer_id="c-1", payload={"plan": "pro"})
        )
        matched = await dispatcher.dispatch_event(
            DomainEvent(type="plan_upgraded", customer_id="c-2", payload={"plan": "enterprise"})
        )

        assert skipped == []
        assert len(matched) == 1
        assert matched[0].customer_id == "c-2"
        assert matched[0].trigger.kind == TriggerKind.EVENT
        assert matched[0].context["payload"] == {"event_type": "plan_upgraded", "plan": "enterprise"}
        await engine.wait_idle()

    @pytest.mark.asyncio
    async def test_event_trigger_node(self, catalog, dispatcher, engine, executors, renewal_event_playbook):
        catalog.publish(renewal_event_playbook)

        executions = await dispatcher.dispatch_event(DomainEvent(type="renewal_due", customer_id="c-3"))
        await engine.wait_idle()

        assert [e.playbook_id for e in executions] == ["renewal-due"]
        assert len(executors["create_task"].calls) == 1

    @pytest.mark.asyncio
    async def test_health_score_trigger_threshold(self, catalog, dispatcher, engine, alert_playbook):
        catalog.publish(alert_playbook)

        def drop(score, previous):
            return DomainEvent(
                type="health_score_drop",
                customer_id="c-1",
                payload={"score": score, "previous_score": previous},
            )

        above = await dispatcher.dispatch_event(drop(35, 80))
        crossing = await dispatcher.dispatch_event(drop(20, 35))
        still_below = await dispatcher.dispatch_event(drop(10, 20))
        first_sight = await dispatcher.dispatch_event(drop(25, None))
        await engine.wait_idle()

        assert above == []
        assert len(crossing) == 1
        assert still_below == []
        assert len(first_sight) == 1

    @pytest.mark.asyncio
    async def test_health_score_trigger_ignores_alerts_when_threshold_set(self, catalog, dispatcher, alert_playbook):
        catalog.publish(alert_playbook)

        executions = await dispatcher.dispatch_event(DomainEvent(
            type="health_score_alert",
            customer_id="c-1",
            payload={"score": 20, "previous_score": 90, "threshold": 40},
        ))

        assert executions == []

    @pytest.mark.asyncio
    async def test_rejections_are_skipped(self, catalog, engine, store, clock, renewal_event_playbook):
        dispatcher = TriggerDispatcher(catalog, engine, store, clock, rules=[
            EventRule(event_type="renewal_due", playbook_id="deleted-playbook"),
        ])
        catalog.publish(renewal_event_playbook)

        executions = await dispatcher.dispatch_event(DomainEvent(type="renewal_due", customer_id="c-1"))
        await engine.wait_idle()

        assert [e.playbook_id for e in executions] == ["renewal-due"]

    @pytest.mark.asyncio
    async def test_inactive_trigger_playbook_ignored(self, catalog, dispatcher, renewal_event_playbook):
        catalog.publish(renewal_event_playbook)
        catalog.set_active("renewal-due", False)

        assert await dispatcher.dispatch_event(DomainEvent(type="renewal_due", customer_id="c-1")) == []

    def test_rule_management(self, dispatcher):
        dispatcher.add_rule(EventRule(event_type="a", playbook_id="p1"))
        dispatcher.add_rule(EventRule(event_type="b", playbook_id="p1"))
        dispatcher.add_rule(EventRule(event_type="a", playbook_id="p2"))

        assert dispatcher.remove_rules("p1") == 2
        assert [r.playbook_id for r in dispatcher.rules] == ["p2"]

    def test_event_cause_carries_event(self):
        event = DomainEvent(type="renewal_due", customer_id="c-1")
        cause = EventCause(playbook_id="renewal-due", event=event)
        assert cause.event.customer_id == "c-1"
