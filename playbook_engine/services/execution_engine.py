"""
Execution Engine

Advances executions through their playbook graph.

- Every execution is driven by its own asyncio task; many run in parallel,
  bounded per organization by `max_concurrent_per_org`
- Handler calls and state changes of one execution are serialized by a
  per-execution lock; `pause` and `cancel` wait for an in-flight handler
  to settle before they take effect
- A wait node parks the execution on a clock timer and frees its task
- Retryable failures are retried with exponential backoff; the lock is
  released between attempts so commands are never starved
- `cancel` takes precedence over a concurrently requested pause or resume
"""

import asyncio
import copy
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from playbook_engine.exceptions import DispatchRejected, EngineInvariantViolation, NotFoundError, RejectReason
from playbook_engine.logging_config import bind_execution_context, get_logger
from playbook_engine.workflows.catalog import PlaybookCatalog
from playbook_engine.workflows.executor import NodeExecutor
from playbook_engine.workflows.graph import NodeSpec, PlaybookDefinition, successors
from playbook_engine.workflows.handlers import wait_duration
from playbook_engine.workflows.nodes import WAIT_NODE_TYPE, NodeContext, NodeResult, NodeResultStatus
from playbook_engine.workflows.state import (
    Execution,
    ExecutionError,
    ExecutionStatus,
    NodeOutcomeStatus,
)
from playbook_engine.workflows.store import ExecutionStore

from .clock import Clock, TimerHandle
from .event_bus import EventBus, EventType

logger = get_logger(__name__)

_UNSETTLED_OUTCOMES = frozenset({
    NodeOutcomeStatus.RUNNING,
    NodeOutcomeStatus.WAITING,
    NodeOutcomeStatus.RETRYING,
})


@dataclass
class _Step:
    """What the driver does after one handler attempt."""
    advance: bool = False
    retry_delay: Optional[float] = None


_STOP = _Step()
_ADVANCE = _Step(advance=True)


class ExecutionEngine:
    """
    Execution engine / state machine.

    Usage:
        engine = ExecutionEngine(catalog, store, NodeExecutor(registry), bus, clock)
        engine.admit(execution)
        await engine.start(execution)
        await engine.pause(execution.id)
        await engine.resume(execution.id)
        await engine.cancel(execution.id)
    """

    def __init__(
        self,
        catalog: PlaybookCatalog,
        store: ExecutionStore,
        node_executor: NodeExecutor,
        bus: EventBus,
        clock: Clock,
        max_concurrent_per_org: int = 100,
    ):
        self._catalog = catalog
        self._store = store
        self._executor = node_executor
        self._bus = bus
        self._clock = clock
        self.max_concurrent_per_org = max_concurrent_per_org

        # Working copies of every non-terminal execution; the engine is the only writer
        self._live: Dict[str, Execution] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._generations: Dict[str, int] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._timers: Dict[str, TimerHandle] = {}
        self._cancel_requested: Set[str] = set()
        self._admitted: Dict[str, Set[str]] = {}

    # =========================================================================
    # Admission
    # =========================================================================

    def admit(self, execution: Execution) -> None:
        """
        Reserve a concurrency slot for an execution.

        Raises:
            DispatchRejected: If the organization is at its limit
        """
        admitted = self._admitted.setdefault(execution.organization_id, set())
        if execution.id in admitted:
            return

        if len(admitted) >= self.max_concurrent_per_org:
            logger.warning(
                "Dispatch rejected",
                reason="concurrency_limit_exceeded",
                organization_id=execution.organization_id,
                limit=self.max_concurrent_per_org,
            )
            raise DispatchRejected(
                RejectReason.CONCURRENCY_LIMIT_EXCEEDED,
                f"Organization {execution.organization_id} has "
                f"{self.max_concurrent_per_org} executions in progress",
                organization_id=execution.organization_id,
                limit=self.max_concurrent_per_org,
            )
        admitted.add(execution.id)

    def release(self, execution: Execution) -> None:
        """Free an execution's concurrency slot."""
        admitted = self._admitted.get(execution.organization_id)
        if admitted is not None:
            admitted.discard(execution.id)

    def active_count(self, organization_id: str) -> int:
        return len(self._admitted.get(organization_id, ()))

    def pinned_versions(self, playbook_id: str) -> Set[int]:
        """Versions of a playbook referenced by non-terminal executions."""
        return {
            e.playbook_version for e in self._live.values()
            if e.playbook_id == playbook_id
        }

    # =========================================================================
    # Commands
    # =========================================================================

    async def start(self, execution: Execution) -> Execution:
        """
        Pending -> Running; enter the entry node and begin driving.

        Returns:
            Snapshot of the running execution

        Raises:
            EngineInvariantViolation: If the execution is not Pending
        """
        if execution.status != ExecutionStatus.PENDING:
            raise EngineInvariantViolation(
                f"Cannot start execution {execution.id} in state {execution.status.value}",
                current_state=execution.status.value,
                attempted="start",
            )

        async with self._lock_for(execution.id):
            stored = await self._store.get(execution.id)
            if execution.id in self._live or (stored is not None and stored.status != ExecutionStatus.PENDING):
                current = self._live.get(execution.id) or stored
                raise EngineInvariantViolation(
                    f"Execution {execution.id} was already started",
                    current_state=current.status.value,
                    attempted="start",
                )

            try:
                self.admit(execution)
                definition = self._catalog.resolve(execution.playbook_id, execution.playbook_version)
            except Exception:
                self.release(execution)
                raise

            execution = execution.model_copy(deep=True)
            now = self._clock.now()
            execution.transition(ExecutionStatus.RUNNING, at=now, attempted="start")
            entry = definition.node(definition.entry_node_id)
            execution.enter_node(entry.id, entry.node_type, now)

            self._live[execution.id] = execution
            self._generations[execution.id] = 0
            await self._save(execution)

            logger.info(
                "Execution started",
                execution_id=execution.id,
                playbook_id=execution.playbook_id,
                version=execution.playbook_version,
            )
            self._spawn(execution.id, 0)
            return execution.model_copy(deep=True)

    async def pause(self, execution_id: str) -> Execution:
        """
        Running -> Paused.

        Waits for an in-flight handler to settle first.

        Raises:
            NotFoundError: Unknown execution
            EngineInvariantViolation: Not Running, or a cancel is pending
        """
        self._reject_if_cancelling(execution_id, "pause")
        await self._require_open(execution_id, "pause")

        try:
            async with self._lock_for(execution_id):
                self._reject_if_cancelling(execution_id, "pause")
                execution = await self._require(execution_id)

                execution.transition(ExecutionStatus.PAUSED, at=self._clock.now(), attempted="pause")
                self._interrupt(execution_id)
                await self._save(execution)

                logger.info("Execution paused", execution_id=execution_id, node_id=execution.current_node_id)
                return execution.model_copy(deep=True)
        finally:
            self._discard_finished_lock(execution_id)

    async def resume(self, execution_id: str) -> Execution:
        """
        Paused -> Running.

        Re-invokes the current node's handler, or continues a wait that has
        not elapsed yet.

        Raises:
            NotFoundError: Unknown execution
            EngineInvariantViolation: Not Paused, or a cancel is pending
        """
        self._reject_if_cancelling(execution_id, "resume")
        await self._require_open(execution_id, "resume")

        try:
            async with self._lock_for(execution_id):
                self._reject_if_cancelling(execution_id, "resume")
                execution = await self._require(execution_id)

                if execution.status != ExecutionStatus.PAUSED:
                    raise EngineInvariantViolation(
                        f"Cannot resume execution {execution_id} in state {execution.status.value}",
                        current_state=execution.status.value,
                        attempted="resume",
                        allowed_states=[ExecutionStatus.PAUSED.value],
                    )

                execution.transition(ExecutionStatus.RUNNING, at=self._clock.now(), attempted="resume")
                generation = self._interrupt(execution_id)
                await self._save(execution)

                logger.info("Execution resumed", execution_id=execution_id, node_id=execution.current_node_id)
                self._spawn(execution_id, generation)
                return execution.model_copy(deep=True)
        finally:
            self._discard_finished_lock(execution_id)

    async def cancel(self, execution_id: str) -> Execution:
        """
        Pending / Running / Paused -> Cancelled.

        Cooperative: an in-flight handler finishes its current attempt, then
        no further node runs.

        Raises:
            NotFoundError: Unknown execution
            EngineInvariantViolation: Already terminal
        """
        execution = await self._require(execution_id)
        if execution.is_terminal:
            self._raise_terminal(execution, "cancel")

        self._cancel_requested.add(execution_id)
        try:
            async with self._lock_for(execution_id):
                execution = await self._require(execution_id)
                if execution.is_terminal:
                    self._raise_terminal(execution, "cancel")

                now = self._clock.now()
                self._interrupt(execution_id)
                outcome = execution.current_outcome()
                if outcome is not None and outcome.status in _UNSETTLED_OUTCOMES:
                    outcome.status = NodeOutcomeStatus.INTERRUPTED
                    outcome.completed_at = now

                execution.transition(ExecutionStatus.CANCELLED, at=now, attempted="cancel")
                await self._save(execution)
                self._finish(execution)

                logger.info("Execution cancelled", execution_id=execution_id, node_id=execution.current_node_id)
                return execution.model_copy(deep=True)
        finally:
            self._cancel_requested.discard(execution_id)

    async def signal(self, execution_id: str) -> Execution:
        """
        End the current wait early.

        A running execution continues at once; a paused one continues when
        resumed.

        Raises:
            NotFoundError: Unknown execution
            EngineInvariantViolation: The execution is not waiting
        """
        await self._require_open(execution_id, "signal")

        try:
            async with self._lock_for(execution_id):
                execution = await self._require(execution_id)
                if execution.is_terminal or not execution.is_waiting:
                    raise EngineInvariantViolation(
                        f"Execution {execution_id} is not waiting",
                        current_state=execution.status.value,
                        attempted="signal",
                    )

                now = self._clock.now()
                execution.wait_until = now
                outcome = execution.current_outcome()
                if outcome is not None:
                    outcome.wait_until = now
                generation = self._interrupt(execution_id)
                await self._save(execution)

                logger.info("Wait signalled", execution_id=execution_id, node_id=execution.current_node_id)
                if execution.status == ExecutionStatus.RUNNING:
                    self._spawn(execution_id, generation)
                return execution.model_copy(deep=True)
        finally:
            self._discard_finished_lock(execution_id)

    # =========================================================================
    # Queries and lifecycle
    # =========================================================================

    async def get(self, execution_id: str) -> Execution:
        """
        Get an execution by ID.

        Raises:
            NotFoundError: If the execution does not exist
        """
        live = self._live.get(execution_id)
        if live is not None:
            return live.model_copy(deep=True)
        stored = await self._store.get(execution_id)
        if stored is None:
            raise NotFoundError("Execution", execution_id)
        return stored

    def is_parked(self, execution_id: str) -> bool:
        return execution_id in self._timers

    def list_live(self) -> List[Execution]:
        """Snapshots of every non-terminal execution."""
        return [e.model_copy(deep=True) for e in self._live.values()]

    async def wait_idle(self) -> None:
        """Wait until no driver task is running; parked executions stay parked."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop every driver and timer; executions keep their persisted state."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Execution engine stopped", live_executions=len(self._live))

    # =========================================================================
    # Driver
    # =========================================================================

    def _spawn(self, execution_id: str, generation: int) -> None:
        task = asyncio.create_task(self._drive(execution_id, generation))
        self._tasks[execution_id] = task
        task.add_done_callback(lambda t: self._on_task_done(execution_id, t))

    def _on_task_done(self, execution_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(execution_id) is task:
            del self._tasks[execution_id]

    def _is_current(self, execution_id: str, generation: int) -> bool:
        return self._generations.get(execution_id) == generation

    async def _drive(self, execution_id: str, generation: int) -> None:
        execution = self._live.get(execution_id)
        if execution is None:
            return
        bind_execution_context(execution_id, execution.playbook_id)

        try:
            definition = self._catalog.resolve(execution.playbook_id, execution.playbook_version)
            await self._run(execution_id, generation, definition)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Execution driver crashed", execution_id=execution_id)
            await self._fail_crashed(execution_id, generation, e)

    async def _run(self, execution_id: str, generation: int, definition: PlaybookDefinition) -> None:
        while True:
            if execution_id not in self._live:
                return
            async with self._lock_for(execution_id):
                execution = self._live.get(execution_id)
                if (
                    execution is None
                    or execution.status != ExecutionStatus.RUNNING
                    or not self._is_current(execution_id, generation)
                    or execution_id in self._cancel_requested
                ):
                    return

                node = definition.node(execution.current_node_id)
                if node.node_type == WAIT_NODE_TYPE and await self._park_if_due(execution, node, generation):
                    return

                outcome = execution.current_outcome()
                outcome.attempts += 1
                outcome.status = NodeOutcomeStatus.RUNNING

                result = await self._executor.run_attempt(
                    node, self._node_context(execution, node, outcome.attempts)
                )
                step = await self._apply(execution, definition, node, result, outcome.attempts)

            if step.retry_delay is not None:
                await self._clock.sleep(step.retry_delay)
            elif not step.advance:
                return

    async def _apply(
        self,
        execution: Execution,
        definition: PlaybookDefinition,
        node: NodeSpec,
        result: NodeResult,
        attempt: int,
    ) -> _Step:
        now = self._clock.now()
        outcome = execution.current_outcome()
        cancelling = execution.id in self._cancel_requested

        if result.status == NodeResultStatus.SUCCESS:
            outcome.status = NodeOutcomeStatus.SUCCEEDED
            outcome.branch = result.branch
            outcome.output = copy.deepcopy(result.output)
            outcome.error = None
            outcome.error_kind = None
            outcome.completed_at = now
            execution.context.update(copy.deepcopy(result.output))
            execution.wait_until = None

            if cancelling:
                await self._save(execution)
                return _STOP

            following = successors(definition, node.id, result.branch)
            if not following:
                execution.transition(ExecutionStatus.COMPLETED, at=now)
                await self._save(execution)
                await self._bus.publish(
                    EventType.PLAYBOOK_COMPLETED,
                    {**execution.summary(), "path": list(execution.path)},
                    source=execution.id,
                )
                self._finish(execution)
                logger.info("Execution completed", execution_id=execution.id, nodes=len(execution.path))
                return _STOP

            nxt = following[0]
            execution.enter_node(nxt.id, nxt.node_type, now)
            await self._save(execution)
            return _ADVANCE

        outcome.error = result.error
        outcome.error_kind = result.error_kind or result.status.value

        descriptor = self._executor.descriptor_for(node)
        if self._executor.retry_policy.should_retry(descriptor, result, attempt) and not cancelling:
            delay = self._executor.retry_policy.delay_after(attempt)
            outcome.status = NodeOutcomeStatus.RETRYING
            await self._save(execution)
            logger.info(
                "Retrying node",
                execution_id=execution.id,
                node_id=node.id,
                attempt=attempt,
                max_attempts=self._executor.retry_policy.attempts_for(descriptor),
                delay=delay,
            )
            return _Step(retry_delay=delay)

        outcome.status = NodeOutcomeStatus.FAILED
        outcome.completed_at = now
        if cancelling:
            await self._save(execution)
            return _STOP

        error = ExecutionError(
            kind=outcome.error_kind,
            message=result.error or "Node failed",
            node_id=node.id,
            attempts=attempt,
        )
        execution.fail(error, at=now)
        await self._save(execution)
        await self._bus.publish(
            EventType.NODE_FAILED,
            {
                **execution.summary(),
                "node_id": node.id,
                "node_type": node.node_type,
                "error_kind": error.kind,
                "error": error.message,
                "attempts": attempt,
            },
            source=execution.id,
        )
        self._finish(execution)
        logger.error(
            "Execution failed",
            execution_id=execution.id,
            node_id=node.id,
            error_kind=error.kind,
            error=error.message,
            attempts=attempt,
        )
        return _STOP

    async def _park_if_due(self, execution: Execution, node: NodeSpec, generation: int) -> bool:
        """Park on a wait node until its deadline; False once the deadline has passed."""
        now = self._clock.now()
        outcome = execution.current_outcome()

        if execution.wait_until is None:
            execution.wait_until = now + wait_duration(node.config)
            outcome.status = NodeOutcomeStatus.WAITING
            outcome.wait_until = execution.wait_until
            await self._save(execution)
            logger.info(
                "Execution waiting",
                execution_id=execution.id,
                node_id=node.id,
                wait_until=execution.wait_until.isoformat(),
            )

        if now >= execution.wait_until:
            return False

        self._timers[execution.id] = self._clock.call_at(
            execution.wait_until,
            lambda: self._wake(execution.id, generation),
        )
        return True

    def _wake(self, execution_id: str, generation: int) -> None:
        self._timers.pop(execution_id, None)
        execution = self._live.get(execution_id)
        if (
            execution is not None
            and execution.status == ExecutionStatus.RUNNING
            and self._is_current(execution_id, generation)
        ):
            self._spawn(execution_id, generation)

    async def _fail_crashed(self, execution_id: str, generation: int, error: Exception) -> None:
        async with self._lock_for(execution_id):
            execution = self._live.get(execution_id)
            if (
                execution is None
                or execution.is_terminal
                or not self._is_current(execution_id, generation)
                or execution_id in self._cancel_requested
            ):
                return
            execution.fail(
                ExecutionError(
                    kind="engine_error",
                    message=f"{type(error).__name__}: {error}",
                    node_id=execution.current_node_id,
                ),
                at=self._clock.now(),
            )
            await self._save(execution)
            self._finish(execution)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lock_for(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()
        return lock

    def _interrupt(self, execution_id: str) -> int:
        """Invalidate the current driver and wake-up timer; returns the new generation."""
        generation = self._generations.get(execution_id, 0) + 1
        self._generations[execution_id] = generation
        handle = self._timers.pop(execution_id, None)
        if handle is not None:
            handle.cancel()
        return generation

    def _finish(self, execution: Execution) -> None:
        self._live.pop(execution.id, None)
        self._generations.pop(execution.id, None)
        self._locks.pop(execution.id, None)
        handle = self._timers.pop(execution.id, None)
        if handle is not None:
            handle.cancel()
        self.release(execution)

    async def _require(self, execution_id: str) -> Execution:
        execution = self._live.get(execution_id)
        if execution is not None:
            return execution

        stored = await self._store.get(execution_id)
        if stored is None:
            raise NotFoundError("Execution", execution_id)
        if not stored.is_terminal:
            # Known to the store but not driven by this engine (e.g. after a restart)
            self._live[execution_id] = stored
            self._generations.setdefault(execution_id, 0)
        return self._live.get(execution_id, stored)

    async def _require_open(self, execution_id: str, attempted: str) -> Execution:
        execution = await self._require(execution_id)
        if execution.is_terminal:
            self._raise_terminal(execution, attempted)
        return execution

    def _discard_finished_lock(self, execution_id: str) -> None:
        # Only live executions keep a lock between calls
        if execution_id in self._live:
            return
        lock = self._locks.get(execution_id)
        if lock is not None and not lock.locked():
            del self._locks[execution_id]

    def _reject_if_cancelling(self, execution_id: str, attempted: str) -> None:
        if execution_id in self._cancel_requested:
            raise EngineInvariantViolation(
                f"Execution {execution_id} is being cancelled",
                current_state="cancelling",
                attempted=attempted,
            )

    @staticmethod
    def _raise_terminal(execution: Execution, attempted: str) -> None:
        raise EngineInvariantViolation(
            f"Cannot {attempted} execution {execution.id} in terminal state {execution.status.value}",
            current_state=execution.status.value,
            attempted=attempted,
        )

    def _node_context(self, execution: Execution, node: NodeSpec, attempt: int) -> NodeContext:
        return NodeContext(
            execution_id=execution.id,
            playbook_id=execution.playbook_id,
            playbook_version=execution.playbook_version,
            organization_id=execution.organization_id,
            customer_id=execution.customer_id,
            node_id=node.id,
            attempt=attempt,
            data=copy.deepcopy(execution.context),
        )

    async def _save(self, execution: Execution) -> None:
        execution.updated_at = self._clock.now()
        await self._store.put(execution)
        await self._bus.publish(EventType.EXECUTION_UPDATE, execution.summary(), source=execution.id)
