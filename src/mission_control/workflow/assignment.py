"""Keyword-affinity assignment of tasks to agents.

Scoring:

1. Each agent role maps to a list of keywords.  An agent's keyword score is
   the number of its role keywords found in the lowercased task text
   (``title + " " + description``).
2. :func:`pick_smart_assignee` takes the highest score of at least 1, ties
   going to roster order.
3. :func:`find_best_agent` subtracts ``penalty * in_progress_count`` from the
   score of every matching agent before ranking, to spread load.
4. With no matching agent, both fall back to the first ``lead`` agent, else the
   first agent on the roster.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from ..constants import DEFAULT_WORKLOAD_PENALTY
from .model import Agent, AgentLevel, Task, TaskStatus

logger = logging.getLogger(__name__)


ROLE_KEYWORDS: dict[str, list[str]] = {
    "backend": ["api", "endpoint", "server", "database", "schema", "query", "migration", "backend", "service"],
    "frontend": ["ui", "button", "modal", "component", "layout", "css", "page", "frontend", "react"],
    "designer": ["design", "mockup", "figma", "styling", "ux", "wireframe", "visual"],
    "qa": ["test", "bug", "regression", "coverage", "qa", "verify", "flaky"],
    "devops": ["deploy", "ci", "pipeline", "docker", "infra", "monitoring", "release"],
    "security": ["auth", "login", "token", "permission", "security", "vulnerability", "encrypt"],
    "writer": ["doc", "documentation", "readme", "guide", "tutorial", "copy", "blog"],
    "data": ["analytics", "metrics", "report", "dashboard", "etl", "data"],
    "product": ["roadmap", "spec", "requirement", "user story", "feature", "prioritize"],
    "performance": ["perf", "performance", "latency", "optimize", "cache", "slow"],
}


@dataclass
class AgentScore:
    agent_id: str
    name: str
    score: int
    workload: int = 0
    matched: list[str] = field(default_factory=list)

    def adjusted(self, penalty: float) -> float:
        return self.score - self.workload * penalty


@dataclass
class AssignmentResult:
    success: bool
    task_id: str
    assignee_ids: list[str] = field(default_factory=list)
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "task_id": self.task_id,
            "assignee_ids": list(self.assignee_ids),
            "reason": self.reason,
        }


@dataclass
class BacklogAssignmentReport:
    processed: int = 0
    assigned: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"processed": self.processed, "assigned": self.assigned, "results": list(self.results)}


def keywords_for_role(role: str, overrides: Optional[Mapping[str, list[str]]] = None) -> list[str]:
    """Keywords for *role*, matched case-insensitively.

    An exact role key wins; otherwise every known role key contained in the
    role string contributes (``"Senior Backend Engineer"`` -> ``backend``).
    """
    table: dict[str, list[str]] = dict(ROLE_KEYWORDS)
    if overrides:
        table.update({k.lower(): list(v) for k, v in overrides.items()})
    key = role.strip().lower()
    if key in table:
        return table[key]
    out: list[str] = []
    for role_key, words in table.items():
        if role_key in key:
            out.extend(w for w in words if w not in out)
    return out


def task_text(task: Task) -> str:
    return f"{task.title} {task.description}".lower()


def keyword_score(
    agent: Agent,
    text: str,
    overrides: Optional[Mapping[str, list[str]]] = None,
) -> AgentScore:
    matched = [kw for kw in keywords_for_role(agent.role, overrides) if kw.lower() in text]
    return AgentScore(agent_id=agent.id, name=agent.name, score=len(matched), matched=matched)


def fallback_agent(agents: Sequence[Agent]) -> Optional[Agent]:
    for agent in agents:
        if agent.level == AgentLevel.LEAD:
            return agent
    return agents[0] if agents else None


def pick_smart_assignee(
    agents: Sequence[Agent],
    task: Task,
    overrides: Optional[Mapping[str, list[str]]] = None,
) -> tuple[Optional[Agent], str]:
    """Return ``(agent, reason)``; ``agent`` is None only for an empty roster."""
    text = task_text(task)
    best: Optional[AgentScore] = None
    for agent in agents:
        scored = keyword_score(agent, text, overrides)
        if scored.score >= 1 and (best is None or scored.score > best.score):
            best = scored
    if best is not None:
        agent = next(a for a in agents if a.id == best.agent_id)
        return agent, f"Assigned to {agent.name} (matched keywords: {', '.join(best.matched)})"
    lead = fallback_agent(agents)
    if lead is None:
        return None, "No suitable agents found"
    return lead, f"No strong match found, assigned to {lead.name} ({lead.role}) for delegation"


def workload_by_agent(tasks: Sequence[Task]) -> dict[str, int]:
    """Count of ``in_progress`` tasks per assignee."""
    counts: dict[str, int] = {}
    for task in tasks:
        if task.status != TaskStatus.IN_PROGRESS:
            continue
        for agent_id in task.assignee_ids:
            counts[agent_id] = counts.get(agent_id, 0) + 1
    return counts


def find_best_agent(
    agents: Sequence[Agent],
    task: Task,
    workload: Mapping[str, int],
    penalty: float = DEFAULT_WORKLOAD_PENALTY,
    overrides: Optional[Mapping[str, list[str]]] = None,
) -> Optional[Agent]:
    text = task_text(task)
    candidates: list[AgentScore] = []
    for agent in agents:
        scored = keyword_score(agent, text, overrides)
        if scored.score > 0:
            scored.workload = int(workload.get(agent.id, 0))
            candidates.append(scored)
    if candidates:
        # sorted() is stable, so equal adjusted scores keep roster order.
        candidates = sorted(candidates, key=lambda c: c.adjusted(penalty), reverse=True)
        winner = candidates[0]
        logger.debug(
            "Best agent for %s: %s (score=%d workload=%d)",
            task.id,
            winner.agent_id,
            winner.score,
            winner.workload,
        )
        return next(a for a in agents if a.id == winner.agent_id)
    return fallback_agent(agents)
