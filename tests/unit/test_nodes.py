"""Unit tests for the node type registry"""

import pytest

from playbook_engine.exceptions import NotFoundError, RegistryClosedError
from playbook_engine.workflows.handlers import build_default_registry, trigger_handler
from playbook_engine.workflows.nodes import (
    ConfigField,
    ConfigSchema,
    NodeCategory,
    NodeResult,
    NodeResultStatus,
    NodeTypeDescriptor,
    NodeTypeRegistry,
    ValueKind,
)


def _descriptor(node_type="custom_trigger", category=NodeCategory.TRIGGER):
    return NodeTypeDescriptor(node_type=node_type, category=category, handler=trigger_handler)


# =============================================================================
# Registry
# =============================================================================


class TestNodeTypeRegistry:
    """Tests for registration, freezing and lookup"""

    def test_register_and_lookup(self):
        registry = NodeTypeRegistry()
        registry.register(_descriptor())

        assert "custom_trigger" in registry
        assert registry.lookup("custom_trigger").is_trigger
        assert len(registry) == 1

    def test_duplicate_registration(self):
        registry = NodeTypeRegistry()
        registry.register(_descriptor())

        with pytest.raises(ValueError, match="already registered"):
            registry.register(_descriptor())

    def test_register_after_freeze(self):
        registry = NodeTypeRegistry()
        registry.freeze()

        with pytest.raises(RegistryClosedError) as exc_info:
            registry.register(_descriptor())

        assert registry.frozen
        assert exc_info.value.details == {"node_type": "custom_trigger"}

    def test_lookup_unknown(self):
        with pytest.raises(NotFoundError):
            NodeTypeRegistry().lookup("missing")

    def test_get_unknown_returns_none(self):
        assert NodeTypeRegistry().get("missing") is None

    def test_types_by_category(self):
        registry = NodeTypeRegistry()
        registry.register(_descriptor())
        registry.register(_descriptor("notify", NodeCategory.COMMUNICATION))

        assert [d.node_type for d in registry.types(NodeCategory.COMMUNICATION)] == ["notify"]
        assert len(registry.types()) == 2


class TestDefaultRegistry:
    """Tests for the standard node catalog"""

    def test_catalog_contents(self):
        registry = build_default_registry()

        assert registry.frozen
        assert len(registry) == 15
        assert len(registry.types(NodeCategory.TRIGGER)) == 5
        assert {d.node_type for d in registry.types(NodeCategory.LOGIC)} == {"condition", "wait"}
        assert {d.node_type for d in registry.types(NodeCategory.COMMUNICATION)} == {
            "send_email", "send_sms", "send_slack",
        }

    def test_logic_nodes_never_retry(self):
        registry = build_default_registry()
        assert registry.lookup("condition").max_attempts == 1
        assert registry.lookup("wait").max_attempts == 1

    def test_max_attempts_override(self):
        registry = build_default_registry(max_attempts={"http_request": 5})
        assert registry.lookup("http_request").max_attempts == 5
        assert registry.lookup("send_email").max_attempts is None


# =============================================================================
# Configuration schemas
# =============================================================================


class TestConfigSchema:
    """Tests for node configuration checks"""

    def test_conforming_config(self):
        schema = ConfigSchema(entries=(
            ConfigField(name="subject", required=True),
            ConfigField(name="due_days", kind=ValueKind.INTEGER),
        ))
        assert schema.check({"subject": "Hi", "due_days": 3, "color": "blue"}) == []

    def test_missing_required(self):
        schema = ConfigSchema(entries=(ConfigField(name="subject", required=True),))
        assert schema.check({}) == ["missing required config key 'subject'"]
        assert schema.check({"subject": None}) == ["missing required config key 'subject'"]

    @pytest.mark.parametrize("kind,value", [
        (ValueKind.NUMBER, True),
        (ValueKind.INTEGER, False),
        (ValueKind.INTEGER, 1.5),
        (ValueKind.STRING, 3),
        (ValueKind.MAPPING, []),
        (ValueKind.LIST, "a,b"),
    ])
    def test_wrong_kind(self, kind, value):
        schema = ConfigSchema(entries=(ConfigField(name="x", kind=kind),))
        assert len(schema.check({"x": value})) == 1

    @pytest.mark.parametrize("kind,value", [
        (ValueKind.NUMBER, 2),
        (ValueKind.NUMBER, 2.5),
        (ValueKind.BOOLEAN, False),
        (ValueKind.LIST, ("a", "b")),
        (ValueKind.ANY, object()),
    ])
    def test_right_kind(self, kind, value):
        schema = ConfigSchema(entries=(ConfigField(name="x", kind=kind),))
        assert schema.check({"x": value}) == []

    def test_choices(self):
        schema = ConfigSchema(entries=(ConfigField(name="method", choices=("GET", "POST")),))
        assert schema.check({"method": "GET"}) == []
        assert "must be one of" in schema.check({"method": "TRACE"})[0]

    def test_extra_keys_rejected_when_closed(self):
        schema = ConfigSchema(entries=(ConfigField(name="a"),), allow_extra=False)
        assert schema.check({"a": "1", "b": "2"}) == ["unknown config key 'b'"]


class TestNodeResult:
    """Tests for handler result construction"""

    def test_factories(self):
        assert NodeResult.success({"a": 1}).output == {"a": 1}
        assert NodeResult.retryable("timeout").status == NodeResultStatus.RETRYABLE_FAILURE
        assert NodeResult.fatal("bad", kind="invalid").error_kind == "invalid"

    def test_output_context_alias(self):
        result = NodeResult.model_validate({"status": "success", "outputContext": {"sent": True}})
        assert result.output == {"sent": True}
