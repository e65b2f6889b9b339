from __future__ import annotations

import pytest

from conductor.core.config import RegisteredAgentSettings, RegistrySettings, Settings
from conductor.orchestration.agents import AgentProfile, AgentRegistry, InMemoryAgentRegistry


def _catalog() -> RegistrySettings:
    return RegistrySettings(
        agents=[
            RegisteredAgentSettings(id="hub", name="Hub", is_control_hub=True),
            RegisteredAgentSettings(id="writer", name="Writer", max_concurrency=2),
        ]
    )


@pytest.mark.asyncio
async def test_registry_loads_catalog_from_settings() -> None:
    registry = InMemoryAgentRegistry.from_settings(Settings(environment="test", registry=_catalog()))

    agents = await registry.list_agents()
    hub = await registry.get_control_hub()

    assert isinstance(registry, AgentRegistry)
    assert [agent.id for agent in agents] == ["hub", "writer"]
    assert agents[1].max_concurrency == 2
    assert hub is not None and hub.id == "hub"


@pytest.mark.asyncio
async def test_registry_returns_copies() -> None:
    registry = InMemoryAgentRegistry.from_settings(_catalog())

    listed = await registry.list_agents()
    listed[0].name = "changed"

    assert (await registry.list_agents())[0].name == "Hub"


@pytest.mark.asyncio
async def test_upsert_moves_control_hub_flag() -> None:
    registry = InMemoryAgentRegistry.from_settings(_catalog())

    await registry.upsert(AgentProfile(id="planner", name="Planner", is_control_hub=True))

    hub = await registry.get_control_hub()
    flags = {agent.id: agent.is_control_hub for agent in await registry.list_agents()}
    assert hub is not None and hub.id == "planner"
    assert flags == {"hub": False, "writer": False, "planner": True}


@pytest.mark.asyncio
async def test_disabled_control_hub_is_not_returned() -> None:
    registry = InMemoryAgentRegistry.from_settings(_catalog())

    await registry.set_enabled("hub", False)

    assert await registry.get_control_hub() is None
    await registry.set_enabled("hub", True)
    assert (await registry.get_control_hub()).id == "hub"
    with pytest.raises(KeyError):
        await registry.set_enabled("ghost", False)
