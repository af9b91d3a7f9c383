"""Tests for agent registry, capability discovery, health tracking, and the catalog.

Covers:
- Registration from models and dicts, overwrite semantics
- Invalid definitions rejected without mutating the registry
- Strict and non-throwing lookup
- Discovery by capability tag
- Health flags with change notifications only on transitions
- AgentCatalog build/install
"""

from __future__ import annotations

from typing import Any

import pytest

import src.agentmesh.agents as agents_pkg
from src.agentmesh import topology
from src.agentmesh.agents.base import AgentDefinition, HandoffTool
from src.agentmesh.agents.catalog import AgentCatalog
from src.agentmesh.agents.registry import AgentRegistry
from src.agentmesh.errors import AgentNotFoundError, InvalidAgentDefinitionError
from src.agentmesh.events.bus import InMemoryEventBus
from src.agentmesh.events.schemas import EventType
from src.agentmesh.networks import schemas as network_schemas


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _noop(state: dict[str, Any]) -> dict[str, Any]:
    return {}


def _make_agent(
    agent_id: str,
    capabilities: list[str] | None = None,
    **kwargs: Any,
) -> AgentDefinition:
    """Create a test agent definition with sensible defaults."""
    metadata = {"capabilities": capabilities} if capabilities else {}
    return AgentDefinition(
        id=agent_id,
        name=agent_id.replace("_", " ").title(),
        description=f"Test agent: {agent_id}",
        node_function=_noop,
        metadata=metadata,
        **kwargs,
    )


def _collect(bus: InMemoryEventBus) -> list:
    received: list = []
    bus.subscribe(handler=received.append)
    return received


# ── Registration Tests ───────────────────────────────────────────────────────


def test_register_agent(registry: AgentRegistry):
    """Register an agent and verify it is stored and healthy."""
    agent = _make_agent("researcher")
    stored = registry.register(agent)

    assert stored is agent
    assert "researcher" in registry
    assert len(registry) == 1
    assert registry.is_healthy("researcher") is True


def test_register_from_dict(registry: AgentRegistry):
    """A dict with the required fields is validated into a definition."""
    stored = registry.register({
        "id": "analyst",
        "name": "Analyst",
        "description": "Analyzes findings",
        "node_function": _noop,
    })

    assert isinstance(stored, AgentDefinition)
    assert registry.get("analyst").name == "Analyst"


def test_register_overwrites_and_resets_health(registry: AgentRegistry):
    """Re-registering an id replaces the definition and marks it healthy again."""
    registry.register(_make_agent("researcher"))
    registry.set_health("researcher", False)

    replacement = _make_agent("researcher", capabilities=["search"])
    registry.register(replacement)

    assert len(registry) == 1
    assert registry.get("researcher") is replacement
    assert registry.is_healthy("researcher") is True


def test_register_missing_fields_raises(registry: AgentRegistry):
    """A dict missing the description is rejected and nothing is stored."""
    with pytest.raises(InvalidAgentDefinitionError) as exc_info:
        registry.register({"id": "broken", "name": "Broken", "node_function": _noop})

    assert "description" in exc_info.value.details["fields"]
    assert len(registry) == 0


def test_register_empty_id_raises(registry: AgentRegistry):
    """Empty identity fields fail validation."""
    with pytest.raises(InvalidAgentDefinitionError):
        registry.register({"id": "", "name": "X", "description": "x", "node_function": _noop})


def test_register_non_definition_raises(registry: AgentRegistry):
    """Arbitrary objects are not accepted as definitions."""
    with pytest.raises(InvalidAgentDefinitionError):
        registry.register("researcher")  # type: ignore[arg-type]


def test_invalid_definition_is_value_error(registry: AgentRegistry):
    """InvalidAgentDefinitionError is also a ValueError."""
    with pytest.raises(ValueError):
        registry.register({"id": "x"})


def test_unregister_agent(registry: AgentRegistry):
    """Unregister returns True once, then False."""
    registry.register(_make_agent("researcher"))

    assert registry.unregister("researcher") is True
    assert "researcher" not in registry
    assert registry.is_healthy("researcher") is False
    assert registry.unregister("researcher") is False


# ── Lookup Tests ─────────────────────────────────────────────────────────────


def test_get_unknown_raises(registry: AgentRegistry):
    """Strict lookup raises AgentNotFoundError with the id attached."""
    with pytest.raises(AgentNotFoundError) as exc_info:
        registry.get("ghost")

    assert exc_info.value.agent_id == "ghost"
    assert exc_info.value.code == "AGENT_NOT_FOUND"


def test_find_unknown_returns_none(registry: AgentRegistry):
    assert registry.find("ghost") is None


def test_list_by_capability(registry: AgentRegistry):
    """Only agents declaring the capability tag are returned, in order."""
    registry.register(_make_agent("researcher", capabilities=["search", "summarize"]))
    registry.register(_make_agent("analyst", capabilities=["analyze"]))
    registry.register(_make_agent("reporter", capabilities=["summarize"]))

    found = registry.list_by_capability("summarize")

    assert [a.id for a in found] == ["researcher", "reporter"]
    assert registry.list_by_capability("translate") == []


def test_list_agents_includes_health(registry: AgentRegistry):
    """list_agents returns routing info plus the health flag."""
    registry.register(_make_agent("researcher", capabilities=["search"]))
    registry.register(_make_agent("analyst"))
    registry.set_health("analyst", False)

    listing = {entry["id"]: entry for entry in registry.list_agents()}

    assert listing["researcher"]["capabilities"] == ["search"]
    assert listing["researcher"]["healthy"] is True
    assert listing["analyst"]["healthy"] is False


def test_validate_agents_exist(registry: AgentRegistry):
    registry.register(_make_agent("researcher"))
    assert registry.validate_agents_exist(["researcher", "ghost"]) == ["ghost"]


# ── Health Tests ─────────────────────────────────────────────────────────────


def test_health_change_emits_only_on_transition(
    registry: AgentRegistry, event_bus: InMemoryEventBus
):
    """Setting the same flag twice emits a single health event."""
    registry.register(_make_agent("researcher"))
    received = _collect(event_bus)

    registry.set_health("researcher", False)
    registry.set_health("researcher", False)
    registry.set_health("researcher", True)

    health_events = [e for e in received if e.event_type == EventType.AGENT_HEALTH_CHANGED]
    assert [e.data["healthy"] for e in health_events] == [False, True]


def test_set_health_unknown_raises(registry: AgentRegistry):
    with pytest.raises(AgentNotFoundError):
        registry.set_health("ghost", True)


def test_stats_and_healthy_agents(registry: AgentRegistry):
    """Stats count healthy and unhealthy agents."""
    registry.register(_make_agent("researcher"))
    registry.register(_make_agent("analyst"))
    registry.register(_make_agent("reporter"))
    registry.set_health("analyst", False)

    assert registry.get_stats() == {"total": 3, "healthy": 2, "unhealthy": 1}
    assert [a.id for a in registry.get_healthy_agents()] == ["researcher", "reporter"]


def test_clear_emits_event(registry: AgentRegistry, event_bus: InMemoryEventBus):
    """Clearing removes everything and reports the count."""
    registry.register(_make_agent("researcher"))
    registry.register(_make_agent("analyst"))
    received = _collect(event_bus)

    registry.clear()

    assert len(registry) == 0
    assert received[-1].event_type == EventType.REGISTRY_CLEARED
    assert received[-1].data["removed"] == 2


def test_snapshot_restore_is_exact_and_silent(
    registry: AgentRegistry, event_bus: InMemoryEventBus
):
    """Restoring puts back definitions and health flags and drops new ids."""
    original = _make_agent("researcher")
    registry.register(original)
    registry.set_health("researcher", False)
    snapshot = registry.snapshot(["researcher", "analyst"])

    registry.register(_make_agent("researcher"))
    registry.register(_make_agent("analyst"))
    received = _collect(event_bus)
    registry.restore(snapshot)

    assert registry.get("researcher") is original
    assert registry.is_healthy("researcher") is False
    assert "analyst" not in registry
    assert received == []


def test_registry_without_event_bus():
    """The registry works without an event bus."""
    registry = AgentRegistry()
    registry.register(_make_agent("researcher"))
    registry.set_health("researcher", False)
    assert registry.get_stats()["unhealthy"] == 1


# ── Definition Tests ─────────────────────────────────────────────────────────


def test_handoff_tool_default_name():
    """Handoff tools default to transfer_to_<target>."""
    tool = HandoffTool(target="analyst")
    assert tool.name == "transfer_to_analyst"

    custom = HandoffTool(target="analyst", name="ask_analyst")
    assert custom.name == "ask_analyst"


def test_definition_is_immutable():
    agent = _make_agent("researcher")
    with pytest.raises(Exception):
        agent.name = "Other"  # type: ignore[misc]


def test_definition_handoff_targets():
    agent = _make_agent(
        "researcher",
        handoff_tools=[HandoffTool(target="analyst"), HandoffTool(target="reporter")],
    )
    assert agent.handoff_targets() == ["analyst", "reporter"]


# ── Catalog Tests ────────────────────────────────────────────────────────────


def test_catalog_install(registry: AgentRegistry):
    """Installing a catalog registers every built definition."""
    catalog = AgentCatalog()
    catalog.register("researcher", lambda: _make_agent("researcher"))
    catalog.register("analyst", lambda: _make_agent("analyst"))

    installed = catalog.install(registry)

    assert installed == ["researcher", "analyst"]
    assert registry.list_agent_ids() == ["researcher", "analyst"]


def test_catalog_duplicate_raises():
    catalog = AgentCatalog()
    catalog.register("researcher", lambda: _make_agent("researcher"))
    with pytest.raises(ValueError, match="already registered: researcher"):
        catalog.register("researcher", lambda: _make_agent("researcher"))


def test_catalog_unknown_id_raises():
    catalog = AgentCatalog()
    with pytest.raises(AgentNotFoundError):
        catalog.build(["ghost"])


def test_catalog_id_mismatch_raises():
    """A factory must build the agent its key names."""
    catalog = AgentCatalog()
    catalog.register("researcher", lambda: _make_agent("analyst"))
    with pytest.raises(InvalidAgentDefinitionError):
        catalog.build()


# ── Package Tests ────────────────────────────────────────────────────────────


def test_agents_package_exports_are_bound_eagerly():
    """Every exported name is a real module attribute, not a lazy lookup."""
    for name in agents_pkg.__all__:
        assert name in vars(agents_pkg)
    assert not hasattr(agents_pkg, "__getattr__")


def test_topology_names_are_shared_with_network_schemas():
    """Network schemas re-export the topology configs rather than redefining them."""
    assert network_schemas.END is topology.END
    assert network_schemas.SupervisorConfig is topology.SupervisorConfig
    assert network_schemas.MessageHistoryPolicy is topology.MessageHistoryPolicy

    for value in vars(topology).values():
        module = getattr(value, "__module__", None) or ""
        assert module == topology.__name__ or not module.startswith("src.agentmesh")
