from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .config import Settings
from .errors import PermissionDeniedError
from .models import AgentRole

READ_ONLY_ROLES: frozenset[str] = frozenset({"marketing"})
_KNOWN_ROLES: frozenset[str] = frozenset({"admin", "support", "marketing"})


@dataclass(frozen=True)
class Agent:
    agent_id: str
    display_name: str
    role: AgentRole

    @property
    def read_only(self) -> bool:
        return self.role in READ_ONLY_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def require_write_access(agent: Agent | None, action: str) -> None:
    # None means the system itself (event intake, campaigns) is acting.
    if agent is not None and agent.read_only:
        raise PermissionDeniedError(f"role {agent.role} is read-only and cannot {action}")


class AgentDirectory:
    """Agents provisioned by the external identity provider, keyed by id."""

    def __init__(self, agents: Iterable[Agent] = ()) -> None:
        self._agents: dict[str, Agent] = {}
        for agent in agents:
            if agent.role not in _KNOWN_ROLES:
                raise ValueError(f"unknown agent role: {agent.role}")
            self._agents[agent.agent_id] = agent

    @classmethod
    def from_settings(cls, settings: Settings) -> AgentDirectory:
        return cls(
            Agent(agent_id=agent_id, display_name=display_name, role=role)  # type: ignore[arg-type]
            for agent_id, display_name, role in settings.parsed_agent_directory()
            if role in _KNOWN_ROLES
        )

    def get(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id.strip())

    def list_agents(self) -> list[Agent]:
        return sorted(self._agents.values(), key=lambda value: (value.display_name.lower(), value.agent_id))
