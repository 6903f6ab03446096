"""
Playbook Node Executor

Runs a single handler attempt for a node and normalizes whatever the
handler produced into a NodeResult. The retry policy decides whether a
retryable result gets another attempt and how long to back off first;
the engine owns the loop so it can release the execution between attempts.
"""

import copy
import time
from dataclasses import dataclass
from typing import Optional

from playbook_engine.exceptions import NodeExecutionFailure
from playbook_engine.logging_config import get_logger

from .graph import NodeSpec
from .nodes import NodeContext, NodeResult, NodeResultStatus, NodeTypeDescriptor, NodeTypeRegistry

logger = get_logger(__name__)


@dataclass
class RetryPolicy:
    """
    Exponential backoff budget for retryable node failures.

    `max_attempts` counts the first attempt; a node type may override it.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0

    def attempts_for(self, descriptor: NodeTypeDescriptor) -> int:
        return descriptor.max_attempts or self.max_attempts

    def delay_after(self, attempt: int) -> float:
        """Backoff before the attempt following `attempt` (1-based)."""
        return min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)

    def should_retry(self, descriptor: NodeTypeDescriptor, result: NodeResult, attempt: int) -> bool:
        return (
            result.status == NodeResultStatus.RETRYABLE_FAILURE
            and attempt < self.attempts_for(descriptor)
        )


class NodeExecutor:
    """
    Executor for playbook nodes.

    Looks up the node's handler in the registry, invokes it with a private
    copy of the node configuration, and converts raised failures into
    results. Unexpected exceptions are fatal.
    """

    def __init__(self, registry: NodeTypeRegistry, retry_policy: Optional[RetryPolicy] = None):
        self._registry = registry
        self.retry_policy = retry_policy or RetryPolicy()

    def descriptor_for(self, node: NodeSpec) -> NodeTypeDescriptor:
        return self._registry.lookup(node.node_type)

    async def run_attempt(self, node: NodeSpec, context: NodeContext) -> NodeResult:
        """
        Invoke the node's handler once.

        Args:
            node: The node to execute
            context: Execution context for the handler

        Returns:
            Normalized handler result
        """
        descriptor = self.descriptor_for(node)
        started = time.monotonic()

        try:
            result = await descriptor.handler(copy.deepcopy(node.config), context)
        except NodeExecutionFailure as e:
            status = NodeResultStatus.RETRYABLE_FAILURE if e.retryable else NodeResultStatus.FATAL_FAILURE
            result = NodeResult(status=status, error=e.message, error_kind=e.kind)
        except Exception as e:
            logger.exception(
                "Node handler raised",
                node_id=node.id,
                node_type=node.node_type,
                attempt=context.attempt,
            )
            result = NodeResult.fatal(f"{type(e).__name__}: {e}", kind="unhandled_error")

        if not isinstance(result, NodeResult):
            result = NodeResult.fatal(
                f"Handler returned {type(result).__name__} instead of NodeResult",
                kind="invalid_result",
            )

        elapsed = time.monotonic() - started
        if result.status == NodeResultStatus.SUCCESS:
            logger.info(
                "Node attempt succeeded",
                node_id=node.id,
                node_type=node.node_type,
                attempt=context.attempt,
                branch=result.branch,
                elapsed=round(elapsed, 3),
            )
        else:
            logger.warning(
                "Node attempt failed",
                node_id=node.id,
                node_type=node.node_type,
                attempt=context.attempt,
                status=result.status.value,
                error_kind=result.error_kind,
                error=result.error,
                elapsed=round(elapsed, 3),
            )

        return result
