from __future__ import annotations

import asyncio
from typing import Iterable, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from ..core.config import RegistrySettings, Settings


class AgentSkill(BaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    keywords: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)


class AgentProfile(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    model: str | None = None
    description: str = ""
    is_enabled: bool = True
    is_control_hub: bool = False
    max_concurrency: int = Field(1, ge=1)
    skills: list[AgentSkill] = Field(default_factory=list)

    def skill_ids(self) -> list[str]:
        return [skill.id for skill in self.skills]


@runtime_checkable
class AgentRegistry(Protocol):
    async def list_agents(self) -> list[AgentProfile]:
        ...

    async def get_control_hub(self) -> AgentProfile | None:
        ...


class InMemoryAgentRegistry:
    """Registry backed by a static catalog, typically loaded from settings."""

    def __init__(self, agents: Iterable[AgentProfile] = ()) -> None:
        self._agents: dict[str, AgentProfile] = {agent.id: agent for agent in agents}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings | RegistrySettings) -> "InMemoryAgentRegistry":
        registry_settings = settings.registry if isinstance(settings, Settings) else settings
        return cls(AgentProfile.model_validate(agent.model_dump()) for agent in registry_settings.agents)

    async def list_agents(self) -> list[AgentProfile]:
        async with self._lock:
            return [agent.model_copy(deep=True) for agent in self._agents.values()]

    async def get_control_hub(self) -> AgentProfile | None:
        async with self._lock:
            for agent in self._agents.values():
                if agent.is_control_hub and agent.is_enabled:
                    return agent.model_copy(deep=True)
        return None

    async def upsert(self, agent: AgentProfile) -> None:
        async with self._lock:
            if agent.is_control_hub:
                for existing in self._agents.values():
                    existing.is_control_hub = False
            self._agents[agent.id] = agent.model_copy(deep=True)

    async def set_enabled(self, agent_id: str, enabled: bool) -> None:
        async with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                raise KeyError(agent_id)
            agent.is_enabled = enabled


__all__ = ["AgentProfile", "AgentRegistry", "AgentSkill", "InMemoryAgentRegistry"]
