from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from ..core.logging import get_logger
from ..core.metrics import record_plan_validation
from .agents import AgentProfile
from .plan import PlannedAssignment, TaskPlan

logger = get_logger(name=__name__)


@dataclass(slots=True)
class PlanValidation:
    is_valid: bool
    warnings: dict[int, list[str]] = field(default_factory=dict)
    cycle_indices: list[int] = field(default_factory=list)
    cycle_description: str | None = None

    @property
    def has_warnings(self) -> bool:
        return any(self.warnings.values())

    def warnings_for(self, index: int) -> list[str]:
        return list(self.warnings.get(index, []))

    def to_dict(self, plan: TaskPlan | None = None) -> dict[str, object]:
        entries = []
        for index, messages in sorted(self.warnings.items()):
            entry: dict[str, object] = {"index": index, "warnings": list(messages)}
            if plan is not None and index < len(plan.assignments):
                entry["agent_id"] = plan.assignments[index].agent_id
            entries.append(entry)
        return {
            "is_valid": self.is_valid,
            "assignments": entries,
            "cycle": self.cycle_description,
        }


def dependency_targets(assignments: Sequence[PlannedAssignment], index: int) -> tuple[list[int], list[str], bool]:
    """Resolve one assignment's ``depends_on`` entries to plan indices.

    An entry names an agent and matches every other assignment of that agent.
    Returns the matched indices, entries that matched nothing, and whether the
    assignment depends on its own agent.
    """
    own = assignments[index]
    targets: list[int] = []
    dangling: list[str] = []
    self_reference = False
    for dependency in own.depends_on:
        if dependency == own.agent_id:
            self_reference = True
        matched = [
            other_index
            for other_index, other in enumerate(assignments)
            if other_index != index and other.agent_id == dependency
        ]
        if matched:
            targets.extend(item for item in matched if item not in targets)
        elif dependency != own.agent_id:
            dangling.append(dependency)
    return targets, dangling, self_reference


class TaskPlanValidator:
    """Advisory checks on a proposed plan. Only dependency cycles make it invalid."""

    def validate(self, plan: TaskPlan, agents: Iterable[AgentProfile]) -> PlanValidation:
        registry = {agent.id: agent for agent in agents}
        assignments = plan.assignments
        warnings: dict[int, list[str]] = {}
        graph: dict[int, list[int]] = {}
        self_loops: set[int] = set()

        for index, assignment in enumerate(assignments):
            messages: list[str] = []
            agent = registry.get(assignment.agent_id)
            if agent is None:
                messages.append(f"Agent ID '{assignment.agent_id}' not found in registered agents")
            elif not agent.is_enabled:
                messages.append(f"Agent '{agent.name}' ({agent.id}) is disabled")
            else:
                declared = set(agent.skill_ids())
                for skill in assignment.matched_skills:
                    if skill not in declared:
                        messages.append(f"Skill '{skill}' is not declared by agent '{agent.name}'")
            if agent is not None:
                messages.extend(_constraint_warnings(assignment.task_description, agent))

            targets, dangling, self_reference = dependency_targets(assignments, index)
            for dependency in dangling:
                messages.append(f"Dangling dependency '{dependency}' does not match any assignment in this plan")
            if self_reference:
                self_loops.add(index)
            graph[index] = targets
            if messages:
                warnings[index] = messages

        cycle_nodes = _cycle_members(graph, self_loops)
        if cycle_nodes:
            ordered = sorted(cycle_nodes)
            agent_chain = " -> ".join(assignments[index].agent_id for index in ordered)
            description = f"Dependency cycle detected between assignments: {agent_chain}"
            for index in ordered:
                warnings.setdefault(index, []).append(f"Assignment is part of a dependency cycle ({agent_chain})")
            record_plan_validation(outcome="cycle", assignments=len(assignments))
            logger.warning("plan_cycle_detected", agents=[assignments[index].agent_id for index in ordered])
            return PlanValidation(
                is_valid=False,
                warnings=warnings,
                cycle_indices=ordered,
                cycle_description=description,
            )

        record_plan_validation(outcome="warnings" if warnings else "valid", assignments=len(assignments))
        return PlanValidation(is_valid=True, warnings=warnings)


def _constraint_warnings(description: str, agent: AgentProfile) -> list[str]:
    """Flag skill constraints sharing two or more words of four letters or more with the task."""
    text = description.lower()
    messages: list[str] = []
    for skill in agent.skills:
        for constraint in skill.constraints:
            hits = [word for word in constraint.lower().split() if len(word) > 3 and word in text]
            if len(hits) >= 2:
                messages.append(f"Task may violate constraint on skill '{skill.id}': {constraint}")
    return messages


def _cycle_members(graph: Mapping[int, Sequence[int]], self_loops: set[int]) -> set[int]:
    """Return nodes that sit on a cycle, using Tarjan's strongly connected components."""
    index_counter = 0
    stack: list[int] = []
    on_stack: set[int] = set()
    indices: dict[int, int] = {}
    lowlinks: dict[int, int] = {}
    members: set[int] = set(self_loops)

    def strongconnect(node: int) -> None:
        nonlocal index_counter
        indices[node] = lowlinks[node] = index_counter
        index_counter += 1
        stack.append(node)
        on_stack.add(node)
        for successor in graph.get(node, ()):
            if successor not in indices:
                strongconnect(successor)
                lowlinks[node] = min(lowlinks[node], lowlinks[successor])
            elif successor in on_stack:
                lowlinks[node] = min(lowlinks[node], indices[successor])
        if lowlinks[node] == indices[node]:
            component: list[int] = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            if len(component) > 1:
                members.update(component)

    for node in graph:
        if node not in indices:
            strongconnect(node)
    return members


def normalize_skill_id(value: str) -> str:
    return value.strip().lower().replace("-", "_").replace(" ", "_")


def auto_correct_plan_skills(plan: TaskPlan, agents: Iterable[AgentProfile]) -> tuple[TaskPlan, list[str]]:
    """Map free-form ``matched_skills`` onto the skill ids each agent declares.

    Empty skill lists are inferred from skill keywords found in the task
    description. Returns the corrected plan and a list of applied corrections.
    """
    registry = {agent.id: agent for agent in agents}
    corrections: list[str] = []
    corrected: list[PlannedAssignment] = []
    for assignment in plan.assignments:
        agent = registry.get(assignment.agent_id)
        if agent is None or not agent.skills:
            corrected.append(assignment)
            continue
        normalized = {normalize_skill_id(skill_id): skill_id for skill_id in agent.skill_ids()}
        skills: list[str] = []
        for raw in assignment.matched_skills:
            resolved = _resolve_skill(raw, normalized)
            if resolved != raw:
                corrections.append(f"{agent.id}: '{raw}' -> '{resolved}'")
            if resolved not in skills:
                skills.append(resolved)
        if not skills:
            skills = _infer_skills(assignment.task_description, agent)
            if skills:
                corrections.append(f"{agent.id}: inferred {', '.join(skills)}")
        corrected.append(assignment.model_copy(update={"matched_skills": skills}))
    if corrections:
        logger.info("plan_skills_corrected", corrections=corrections)
    return plan.model_copy(update={"assignments": corrected}), corrections


def _resolve_skill(raw: str, normalized: Mapping[str, str]) -> str:
    key = normalize_skill_id(raw)
    if key in normalized:
        return normalized[key]
    for candidate, original in normalized.items():
        if key and (key in candidate or candidate in key):
            return original
    return raw


def _infer_skills(description: str, agent: AgentProfile) -> list[str]:
    text = description.lower()
    inferred: list[str] = []
    for skill in agent.skills:
        terms = [keyword.lower() for keyword in skill.keywords if keyword.strip()]
        if skill.name:
            terms.append(skill.name.lower())
        if any(term in text for term in terms):
            inferred.append(skill.id)
    return inferred


__all__ = [
    "PlanValidation",
    "TaskPlanValidator",
    "auto_correct_plan_skills",
    "dependency_targets",
    "normalize_skill_id",
]
