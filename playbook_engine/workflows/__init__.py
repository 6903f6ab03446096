"""
Playbook Workflow Model

Components:
- Nodes: node type registry, categories and configuration schemas
- Handlers: built-in trigger, condition, wait and side-effect handlers
- Graph: playbook definitions, validation and traversal
- Catalog: published versions, activation and retention
- State: execution record and its state machine
- Executor: single handler attempts and the retry policy
- Store: execution persistence (in-memory, Redis)
"""

from .nodes import (
    NodeCategory,
    ValueKind,
    ConfigField,
    ConfigSchema,
    NodeResultStatus,
    NodeResult,
    NodeContext,
    NodeTypeDescriptor,
    NodeTypeRegistry,
)
from .handlers import SideEffectExecutor, build_default_registry
from .graph import NodeSpec, EdgeSpec, PlaybookDefinition, validate, successors, build_chain
from .catalog import PlaybookCatalog
from .state import (
    ExecutionStatus,
    TriggerKind,
    TriggerInfo,
    NodeOutcomeStatus,
    NodeOutcome,
    ExecutionError,
    Execution,
)
from .executor import RetryPolicy, NodeExecutor
from .store import ExecutionFilter, ExecutionStore, InMemoryExecutionStore, RedisExecutionStore

__all__ = [
    # Nodes
    "NodeCategory",
    "ValueKind",
    "ConfigField",
    "ConfigSchema",
    "NodeResultStatus",
    "NodeResult",
    "NodeContext",
    "NodeTypeDescriptor",
    "NodeTypeRegistry",
    # Handlers
    "SideEffectExecutor",
    "build_default_registry",
    # Graph
    "NodeSpec",
    "EdgeSpec",
    "PlaybookDefinition",
    "validate",
    "successors",
    "build_chain",
    # Catalog
    "PlaybookCatalog",
    # State
    "ExecutionStatus",
    "TriggerKind",
    "TriggerInfo",
    "NodeOutcomeStatus",
    "NodeOutcome",
    "ExecutionError",
    "Execution",
    # Executor
    "RetryPolicy",
    "NodeExecutor",
    # Store
    "ExecutionFilter",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "RedisExecutionStore",
]
