"""
Built-in Node Handlers

Handlers for the node types the engine understands itself:
- Trigger: entry point, records what started the execution
- Condition: evaluates clauses against the execution context, picks a branch
- Wait: completes once the engine wakes the execution after its deadline
- External effect: communication/data/ai/integration nodes, delegated to
  side-effect executors supplied by the host application

`build_default_registry()` assembles and freezes the standard catalog.
"""

from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

from apscheduler.triggers.cron import CronTrigger

from playbook_engine.exceptions import FatalNodeFailure
from playbook_engine.logging_config import get_logger

from .nodes import (
    CONDITION_NODE_TYPE,
    WAIT_NODE_TYPE,
    ConfigField,
    ConfigSchema,
    NodeCategory,
    NodeContext,
    NodeResult,
    NodeTypeDescriptor,
    NodeTypeRegistry,
    ValueKind,
)

logger = get_logger(__name__)

TRUE_BRANCH = "true"
FALSE_BRANCH = "false"
DEFAULT_BRANCH = "default"

OPERATORS = (
    "==", "!=", "<", ">", "<=", ">=",
    "in", "not_in", "contains",
    "is_none", "is_not_none", "is_true", "is_false",
)
MEMBERSHIP_OPERATORS = ("in", "not_in")

WAIT_UNITS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
}


class SideEffectExecutor(Protocol):
    """
    Contract for collaborators that perform a node's real side effect.

    Must be safe to call again after returning a retryable failure.
    """

    async def execute(
        self, config: Dict[str, Any], context: NodeContext
    ) -> Union[NodeResult, Dict[str, Any]]:
        ...


# =============================================================================
# Condition evaluation
# =============================================================================


def get_nested_value(data: Dict[str, Any], path: str) -> Any:
    """Get nested value using dot notation."""
    value: Any = data
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return None
    return value


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """
    Compare values using operator.

    Raises:
        ValueError: For an unknown operator
        TypeError: When the operands cannot be compared
    """
    if operator == "==":
        return actual == expected
    elif operator == "!=":
        return actual != expected
    elif operator == "<":
        return actual < expected
    elif operator == ">":
        return actual > expected
    elif operator == "<=":
        return actual <= expected
    elif operator == ">=":
        return actual >= expected
    elif operator == "in":
        return actual in expected
    elif operator == "not_in":
        return actual not in expected
    elif operator == "contains":
        return actual is not None and expected in actual
    elif operator == "is_none":
        return actual is None
    elif operator == "is_not_none":
        return actual is not None
    elif operator == "is_true":
        return bool(actual)
    elif operator == "is_false":
        return not bool(actual)
    raise ValueError(f"Unknown operator: {operator}")


def evaluate_conditions(conditions: List[Dict[str, Any]], data: Dict[str, Any]) -> bool:
    """Evaluate all clauses against `data`; every clause must hold."""
    for condition in conditions:
        actual = get_nested_value(data, condition.get("field", ""))
        if not compare(actual, condition.get("operator", "=="), condition.get("value")):
            return False
    return True


def check_conditions(config: Dict[str, Any]) -> List[str]:
    """Publish-time checks of a condition node's clauses."""
    problems = []
    for index, clause in enumerate(config.get("conditions", [])):
        if not isinstance(clause, dict):
            problems.append(f"condition {index} must be a mapping, got {type(clause).__name__}")
            continue

        field = clause.get("field")
        if not isinstance(field, str) or not field:
            problems.append(f"condition {index} needs a non-empty string 'field'")

        operator = clause.get("operator", "==")
        if operator not in OPERATORS:
            problems.append(f"condition {index} has unknown operator {operator!r}")
        elif operator in MEMBERSHIP_OPERATORS and not isinstance(
            clause.get("value"), (list, tuple, set, str, dict)
        ):
            problems.append(f"condition {index} operator '{operator}' needs a collection value")
    return problems


async def condition_handler(config: Dict[str, Any], context: NodeContext) -> NodeResult:
    """Select the "true" or "false" branch for the configured clauses."""
    try:
        result = evaluate_conditions(config.get("conditions", []), context.data)
    except (TypeError, ValueError) as e:
        logger.warning("Condition evaluation failed", node_id=context.node_id, error=str(e))
        return NodeResult.fatal(f"Condition evaluation failed: {e}", kind="condition_error")

    branch = TRUE_BRANCH if result else FALSE_BRANCH
    return NodeResult.success({"condition_result": result}, branch=branch)


def default_branch_label(config: Dict[str, Any]) -> str:
    """Fallback branch label of a condition node."""
    return config.get("default_branch") or DEFAULT_BRANCH


# =============================================================================
# Trigger and wait
# =============================================================================


async def trigger_handler(config: Dict[str, Any], context: NodeContext) -> NodeResult:
    """Entry nodes have no side effect; they only mark the run as triggered."""
    return NodeResult.success({"triggered_by": context.data.get("trigger_kind")})


def check_cron(config: Dict[str, Any]) -> List[str]:
    try:
        CronTrigger.from_crontab(config["cron"], timezone="UTC")
    except ValueError as e:
        return [f"invalid cron expression '{config['cron']}': {e}"]
    return []


def wait_duration(config: Dict[str, Any]) -> timedelta:
    """Length of a wait node's suspension."""
    unit = config.get("unit") or "seconds"
    return timedelta(seconds=float(config["duration"]) * WAIT_UNITS[unit])


async def wait_handler(config: Dict[str, Any], context: NodeContext) -> NodeResult:
    """Invoked once the wait has elapsed or been signalled."""
    return NodeResult.success({"waited_seconds": wait_duration(config).total_seconds()})


# =============================================================================
# External side effects
# =============================================================================


class ExternalEffectHandler:
    """
    Delegates a node to its side-effect executor.

    Executors may return a NodeResult or a plain mapping shaped like
    {"status": ..., "outputContext": {...}, "branch": ...}.
    """

    def __init__(self, node_type: str, executor: Optional[SideEffectExecutor] = None):
        self.node_type = node_type
        self.executor = executor

    async def __call__(self, config: Dict[str, Any], context: NodeContext) -> NodeResult:
        if self.executor is None:
            raise FatalNodeFailure(
                f"No executor bound for node type '{self.node_type}'",
                kind="executor_missing",
            )

        result = await self.executor.execute(config, context)
        if isinstance(result, NodeResult):
            return result
        return NodeResult.model_validate(result)


# =============================================================================
# Default catalog
# =============================================================================


def _schema(*entries: ConfigField) -> ConfigSchema:
    return ConfigSchema(entries=entries)


_TRIGGER_TYPES = {
    "manual_trigger": ("Started by a user action", _schema()),
    "webhook_trigger": (
        "Started by an inbound webhook",
        _schema(ConfigField(name="path", kind=ValueKind.STRING)),
    ),
    "schedule_trigger": (
        "Started on a cron schedule",
        _schema(ConfigField(name="cron", kind=ValueKind.STRING, required=True)),
    ),
    "event_trigger": (
        "Started by a domain event",
        _schema(ConfigField(name="event_type", kind=ValueKind.STRING, required=True)),
    ),
    "health_score_trigger": (
        "Started when a customer's health score drops below a threshold",
        _schema(ConfigField(name="threshold", kind=ValueKind.NUMBER)),
    ),
}

_TRIGGER_CHECKS = {
    "schedule_trigger": check_cron,
}

_EFFECT_TYPES = {
    "send_email": (NodeCategory.COMMUNICATION, _schema(
        ConfigField(name="subject", required=True),
        ConfigField(name="template", required=True),
        ConfigField(name="to"),
    )),
    "send_sms": (NodeCategory.COMMUNICATION, _schema(
        ConfigField(name="message", required=True),
    )),
    "send_slack": (NodeCategory.COMMUNICATION, _schema(
        ConfigField(name="channel", required=True),
        ConfigField(name="message", required=True),
    )),
    "update_field": (NodeCategory.DATA, _schema(
        ConfigField(name="field", required=True),
        ConfigField(name="value", kind=ValueKind.ANY, required=True),
    )),
    "create_task": (NodeCategory.DATA, _schema(
        ConfigField(name="title", required=True),
        ConfigField(name="assignee"),
        ConfigField(name="due_days", kind=ValueKind.INTEGER),
    )),
    "ai_analyze": (NodeCategory.AI, _schema(
        ConfigField(name="prompt", required=True),
        ConfigField(name="model"),
    )),
    "crm_sync": (NodeCategory.INTEGRATION, _schema(
        ConfigField(name="object", required=True),
        ConfigField(name="fields", kind=ValueKind.MAPPING),
    )),
    "http_request": (NodeCategory.INTEGRATION, _schema(
        ConfigField(name="url", required=True),
        ConfigField(name="method", choices=("GET", "POST", "PUT", "PATCH", "DELETE")),
        ConfigField(name="body", kind=ValueKind.MAPPING),
    )),
}

SIDE_EFFECT_NODE_TYPES = tuple(_EFFECT_TYPES)


def build_default_registry(
    executors: Optional[Mapping[str, SideEffectExecutor]] = None,
    max_attempts: Optional[Mapping[str, int]] = None,
) -> NodeTypeRegistry:
    """
    Build and freeze the standard node catalog.

    Args:
        executors: Side-effect executors keyed by node type
        max_attempts: Per-type retry budget overrides

    Returns:
        Frozen registry
    """
    executors = executors or {}
    max_attempts = max_attempts or {}
    registry = NodeTypeRegistry()

    for node_type, (description, schema) in _TRIGGER_TYPES.items():
        registry.register(NodeTypeDescriptor(
            node_type=node_type,
            category=NodeCategory.TRIGGER,
            config_schema=schema,
            handler=trigger_handler,
            config_check=_TRIGGER_CHECKS.get(node_type),
            description=description,
        ))

    registry.register(NodeTypeDescriptor(
        node_type=CONDITION_NODE_TYPE,
        category=NodeCategory.LOGIC,
        config_schema=_schema(
            ConfigField(name="conditions", kind=ValueKind.LIST, required=True),
            ConfigField(name="default_branch"),
        ),
        handler=condition_handler,
        config_check=check_conditions,
        max_attempts=1,
        description="Branch on the execution context",
    ))
    registry.register(NodeTypeDescriptor(
        node_type=WAIT_NODE_TYPE,
        category=NodeCategory.LOGIC,
        config_schema=_schema(
            ConfigField(name="duration", kind=ValueKind.NUMBER, required=True),
            ConfigField(name="unit", choices=tuple(WAIT_UNITS)),
        ),
        handler=wait_handler,
        max_attempts=1,
        description="Suspend the execution for a period of time",
    ))

    for node_type, (category, schema) in _EFFECT_TYPES.items():
        registry.register(NodeTypeDescriptor(
            node_type=node_type,
            category=category,
            config_schema=schema,
            handler=ExternalEffectHandler(node_type, executors.get(node_type)),
            max_attempts=max_attempts.get(node_type),
        ))

    unknown = set(executors) - set(_EFFECT_TYPES)
    if unknown:
        logger.warning("Executors bound to unknown node types ignored", node_types=sorted(unknown))

    registry.freeze()
    return registry
