"""
Capability-based agent registry.

Every stage of the pipeline is handled by an object satisfying ``Agent``.
The registry is a lookup table from task type to the single agent declaring
that capability.
"""

import logging
from typing import Any, Protocol

from promptloop.models import AgentResult, Task, TaskType

logger = logging.getLogger("promptloop.agents")


class Agent(Protocol):
    name: str
    capabilities: frozenset[TaskType]

    def can_handle(self, task_type: TaskType) -> bool: ...

    def execute(self, task: Task) -> AgentResult: ...


class AgentRegistry:
    """Maps each task type to the one agent that handles it."""

    def __init__(self, agents: list[Agent] | None = None) -> None:
        self._by_type: dict[TaskType, Agent] = {}
        self._agents: list[Agent] = []
        for agent in agents or []:
            self.register(agent)

    def register(self, agent: Agent) -> None:
        """
        Register an agent for every task type it can handle.

        Raises:
            ValueError: If another agent already handles one of its task types
        """
        for task_type in agent.capabilities:
            existing = self._by_type.get(task_type)
            if existing is not None and existing is not agent:
                raise ValueError(f"{existing.name} already handles {task_type.value} tasks")
        for task_type in agent.capabilities:
            self._by_type[task_type] = agent
        self._agents.append(agent)
        logger.info(f"[bold blue][AGENTS][/bold blue] Registered {agent.name} for {sorted(t.value for t in agent.capabilities)}")

    def find(self, task_type: TaskType) -> Agent | None:
        agent = self._by_type.get(task_type)
        if agent is not None and agent.can_handle(task_type):
            return agent
        return None

    def status(self) -> list[dict[str, Any]]:
        return [
            {
                "name": agent.name,
                "capabilities": sorted(t.value for t in agent.capabilities),
                "available": all(self._by_type.get(t) is agent for t in agent.capabilities),
            }
            for agent in self._agents
        ]


def missing_input(task: Task, *keys: str) -> list[str]:
    return [key for key in keys if task.metadata.get(key) in (None, "")]
