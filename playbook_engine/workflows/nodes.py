"""
Playbook Node Types

Static catalog of the node kinds a playbook may contain:
- Category: trigger, communication, logic, data, ai, integration
- Configuration schema: required/optional keys and their value kinds
- Handler: the coroutine the engine invokes for a node of that type

The registry is populated at process start and then frozen. Referencing an
unregistered type is a publish-time validation error, never a runtime one.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from playbook_engine.exceptions import NotFoundError, RegistryClosedError
from playbook_engine.logging_config import get_logger

logger = get_logger(__name__)

CONDITION_NODE_TYPE = "condition"
WAIT_NODE_TYPE = "wait"


class NodeCategory(str, Enum):
    """Categories of playbook nodes."""
    TRIGGER = "trigger"
    COMMUNICATION = "communication"
    LOGIC = "logic"
    DATA = "data"
    AI = "ai"
    INTEGRATION = "integration"


class ValueKind(str, Enum):
    """Value kinds a configuration key may declare."""
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    LIST = "list"
    MAPPING = "mapping"
    ANY = "any"


def _matches_kind(value: Any, kind: ValueKind) -> bool:
    # bool is an int subclass; never accept it as a number
    if kind == ValueKind.ANY:
        return True
    if kind == ValueKind.STRING:
        return isinstance(value, str)
    if kind == ValueKind.BOOLEAN:
        return isinstance(value, bool)
    if kind == ValueKind.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if kind == ValueKind.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind == ValueKind.LIST:
        return isinstance(value, (list, tuple))
    if kind == ValueKind.MAPPING:
        return isinstance(value, dict)
    return False


class ConfigField(BaseModel):
    """One declared configuration key."""
    model_config = ConfigDict(frozen=True)

    name: str
    kind: ValueKind = ValueKind.STRING
    required: bool = False
    choices: Optional[Tuple[Any, ...]] = None


class ConfigSchema(BaseModel):
    """
    Declared configuration schema of a node type.

    Unknown keys are tolerated (editors attach display-only values) unless
    `allow_extra` is False.
    """
    model_config = ConfigDict(frozen=True)

    entries: Tuple[ConfigField, ...] = ()
    allow_extra: bool = True

    def check(self, config: Dict[str, Any]) -> List[str]:
        """Return a list of problems with `config`; empty when it conforms."""
        problems = []
        declared = {f.name for f in self.entries}

        for spec in self.entries:
            if spec.name not in config or config[spec.name] is None:
                if spec.required:
                    problems.append(f"missing required config key '{spec.name}'")
                continue

            value = config[spec.name]
            if not _matches_kind(value, spec.kind):
                problems.append(
                    f"config key '{spec.name}' must be of kind {spec.kind.value}, "
                    f"got {type(value).__name__}"
                )
            elif spec.choices is not None and value not in spec.choices:
                problems.append(
                    f"config key '{spec.name}' must be one of {list(spec.choices)}, got {value!r}"
                )

        if not self.allow_extra:
            for key in config:
                if key not in declared:
                    problems.append(f"unknown config key '{key}'")

        return problems


class NodeResultStatus(str, Enum):
    """Outcome reported by a node handler."""
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


class NodeResult(BaseModel):
    """
    Result of a single handler invocation.

    `output` is merged into the execution context on success. `branch` is
    only meaningful for condition nodes.
    """
    model_config = ConfigDict(populate_by_name=True)

    status: NodeResultStatus
    output: Dict[str, Any] = Field(default_factory=dict, alias="outputContext")
    branch: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def success(cls, output: Optional[Dict[str, Any]] = None, branch: Optional[str] = None) -> "NodeResult":
        return cls(status=NodeResultStatus.SUCCESS, output=output or {}, branch=branch)

    @classmethod
    def retryable(cls, error: str, kind: str = "retryable_failure") -> "NodeResult":
        return cls(status=NodeResultStatus.RETRYABLE_FAILURE, error=error, error_kind=kind)

    @classmethod
    def fatal(cls, error: str, kind: str = "fatal_failure") -> "NodeResult":
        return cls(status=NodeResultStatus.FATAL_FAILURE, error=error, error_kind=kind)


class NodeContext(BaseModel):
    """What a handler sees about the execution it runs in."""
    execution_id: str
    playbook_id: str
    playbook_version: int
    organization_id: str
    customer_id: str
    node_id: str
    attempt: int = 1
    data: Dict[str, Any] = Field(default_factory=dict)


NodeHandler = Callable[[Dict[str, Any], NodeContext], Awaitable[NodeResult]]
ConfigCheck = Callable[[Dict[str, Any]], List[str]]


class NodeTypeDescriptor(BaseModel):
    """
    Registry entry for one node type.

    `max_attempts` overrides the engine-wide retry budget for this type.
    `config_check` adds type-specific checks the declarative schema cannot
    express; it returns problems like `ConfigSchema.check`.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    node_type: str
    category: NodeCategory
    config_schema: ConfigSchema = Field(default_factory=ConfigSchema)
    handler: NodeHandler
    max_attempts: Optional[int] = None
    description: str = ""
    config_check: Optional[ConfigCheck] = None

    @property
    def is_trigger(self) -> bool:
        return self.category == NodeCategory.TRIGGER

    def check_config(self, config: Dict[str, Any]) -> List[str]:
        """Schema problems, then type-specific ones once the schema holds."""
        problems = self.config_schema.check(config)
        if not problems and self.config_check is not None:
            problems = self.config_check(config)
        return problems


class NodeTypeRegistry:
    """
    Registry of node type descriptors.

    Types are registered during start-up and the registry is then frozen;
    afterwards it is read-only and safe to share between executions.
    """

    def __init__(self):
        self._types: Dict[str, NodeTypeDescriptor] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, descriptor: NodeTypeDescriptor) -> None:
        """
        Register a node type.

        Raises:
            RegistryClosedError: If the registry has been frozen
            ValueError: If the type is already registered
        """
        if self._frozen:
            raise RegistryClosedError(descriptor.node_type)
        if descriptor.node_type in self._types:
            raise ValueError(f"Node type already registered: {descriptor.node_type}")

        self._types[descriptor.node_type] = descriptor
        logger.debug(
            "Node type registered",
            node_type=descriptor.node_type,
            category=descriptor.category.value,
        )

    def freeze(self) -> None:
        """Close the registry to further registration."""
        self._frozen = True
        logger.info("Node type registry frozen", node_types=len(self._types))

    def lookup(self, node_type: str) -> NodeTypeDescriptor:
        """
        Get the descriptor for a node type.

        Raises:
            NotFoundError: If the type is not registered
        """
        descriptor = self._types.get(node_type)
        if descriptor is None:
            raise NotFoundError("NodeType", node_type)
        return descriptor

    def get(self, node_type: str) -> Optional[NodeTypeDescriptor]:
        """Get a descriptor or None."""
        return self._types.get(node_type)

    def types(self, category: Optional[NodeCategory] = None) -> List[NodeTypeDescriptor]:
        """List registered descriptors, optionally filtered by category."""
        return [
            d for d in self._types.values()
            if category is None or d.category == category
        ]

    def __contains__(self, node_type: object) -> bool:
        return node_type in self._types

    def __len__(self) -> int:
        return len(self._types)
