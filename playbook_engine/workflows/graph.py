"""
Playbook Graph

Versioned directed-graph definition of a playbook: typed nodes joined by
edges, with a single trigger node as entry point. Definitions are frozen
once published and shared read-only by every execution that pins them.
"""

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from playbook_engine.exceptions import NotFoundError, ValidationError

from .handlers import FALSE_BRANCH, TRUE_BRANCH, default_branch_label
from .nodes import CONDITION_NODE_TYPE, NodeTypeRegistry


class NodeSpec(BaseModel):
    """
    One step of a playbook.

    `position` is editor metadata only and never consulted by the engine.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    node_type: str = Field(alias="type")
    config: Dict[str, Any] = Field(default_factory=dict)
    position: Optional[Dict[str, float]] = None


class EdgeSpec(BaseModel):
    """Directed edge; `branch` labels the outgoing edges of condition nodes."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    branch: Optional[str] = None


class PlaybookDefinition(BaseModel):
    """
    Playbook definition.

    `version` is 0 until the catalog publishes the definition and assigns
    the next version number for its id.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    name: str
    category: str = "general"
    description: str = ""
    version: int = 0
    active: bool = True
    entry_node_id: Optional[str] = None

    nodes: Tuple[NodeSpec, ...] = ()
    edges: Tuple[EdgeSpec, ...] = ()

    def node(self, node_id: str) -> NodeSpec:
        """
        Get a node by ID.

        Raises:
            NotFoundError: If the node does not exist
        """
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise NotFoundError("Node", node_id)

    def has_node(self, node_id: str) -> bool:
        return any(node.id == node_id for node in self.nodes)

    def outgoing(self, node_id: str) -> List[EdgeSpec]:
        """Edges leaving the given node, in declaration order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> List[EdgeSpec]:
        """Edges entering the given node."""
        return [edge for edge in self.edges if edge.target == node_id]


def validate(definition: PlaybookDefinition, registry: NodeTypeRegistry) -> str:
    """
    Validate a definition against the graph invariants and node schemas.

    Returns:
        ID of the entry node

    Raises:
        ValidationError: On the first broken invariant
    """
    if not definition.nodes:
        raise ValidationError("Playbook has no nodes")

    seen = set()
    for node in definition.nodes:
        if node.id in seen:
            raise ValidationError(f"Duplicate node id: {node.id}", node_id=node.id)
        seen.add(node.id)

    # Node types and configuration schemas
    triggers = []
    for node in definition.nodes:
        descriptor = registry.get(node.node_type)
        if descriptor is None:
            raise ValidationError(f"Unknown node type: {node.node_type}", node_id=node.id)

        problems = descriptor.check_config(node.config)
        if problems:
            raise ValidationError("; ".join(problems), node_id=node.id)

        if descriptor.is_trigger:
            triggers.append(node.id)

    # Edge references
    for edge in definition.edges:
        if edge.source not in seen:
            raise ValidationError(f"Edge references non-existent node: {edge.source}", node_id=edge.source)
        if edge.target not in seen:
            raise ValidationError(f"Edge references non-existent node: {edge.target}", node_id=edge.target)

    # Entry point
    if len(triggers) != 1:
        raise ValidationError(
            f"Playbook must have exactly one trigger node, found {len(triggers)}"
        )
    entry = triggers[0]
    if definition.entry_node_id is not None and definition.entry_node_id != entry:
        raise ValidationError(
            f"Entry node must be the trigger node '{entry}'",
            node_id=definition.entry_node_id,
        )
    if definition.incoming(entry):
        raise ValidationError("Entry node cannot have incoming edges", node_id=entry)

    # Branching rules
    for node in definition.nodes:
        outgoing = definition.outgoing(node.id)

        if node.node_type == CONDITION_NODE_TYPE:
            default_label = default_branch_label(node.config)
            if default_label in (TRUE_BRANCH, FALSE_BRANCH):
                raise ValidationError(
                    f"Default branch label cannot be '{default_label}'", node_id=node.id
                )
            labels = set()
            for edge in outgoing:
                if not edge.branch:
                    raise ValidationError("Condition node has an unlabeled edge", node_id=node.id)
                if edge.branch in labels:
                    raise ValidationError(
                        f"Condition node has more than one '{edge.branch}' edge", node_id=node.id
                    )
                labels.add(edge.branch)
        else:
            if len(outgoing) > 1:
                raise ValidationError(
                    "Only condition nodes may have more than one outgoing edge", node_id=node.id
                )
            if outgoing and outgoing[0].branch:
                raise ValidationError(
                    "Branch labels are only allowed on condition node edges", node_id=node.id
                )

    return entry


def successors(
    definition: PlaybookDefinition,
    node_id: str,
    branch: Optional[str] = None,
) -> List[NodeSpec]:
    """
    Nodes that follow `node_id`.

    A non-condition node has at most one successor; none means terminal.
    For a condition node, `branch` selects among labeled edges, falling back
    to the node's configured default label when no edge carries `branch`.
    """
    node = definition.node(node_id)
    outgoing = definition.outgoing(node_id)

    if node.node_type != CONDITION_NODE_TYPE:
        return [definition.node(edge.target) for edge in outgoing]

    selected = [edge for edge in outgoing if branch is not None and edge.branch == branch]
    if not selected:
        default_label = default_branch_label(node.config)
        selected = [edge for edge in outgoing if edge.branch == default_label]

    return [definition.node(edge.target) for edge in selected]


def build_chain(
    playbook_id: str,
    organization_id: str,
    steps: List[Dict[str, Any]],
    name: Optional[str] = None,
    **attributes: Any,
) -> PlaybookDefinition:
    """
    Build a linear playbook.

    Helper for sequential playbooks: each step is {"type": ..., "config": ...}
    with an optional "id"; consecutive steps are joined by unlabeled edges.
    """
    nodes = []
    for i, step in enumerate(steps):
        nodes.append(NodeSpec(
            id=step.get("id", f"node_{i}"),
            node_type=step["type"],
            config=step.get("config", {}),
        ))

    edges = [
        EdgeSpec(source=prev.id, target=nxt.id)
        for prev, nxt in zip(nodes, nodes[1:])
    ]

    return PlaybookDefinition(
        id=playbook_id,
        organization_id=organization_id,
        name=name or f"Chain-{playbook_id}",
        nodes=tuple(nodes),
        edges=tuple(edges),
        **attributes,
    )
