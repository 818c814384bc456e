"""
Colony Task Router

Decomposes a goal into tasks tagged with a worker specialization and
annotates each task with the best applicable skill from memory.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from colony.config import GoalOptions, RouterConfig
from colony.errors import EmptyDecomposition
from colony.gateway.models import GatewayRequest, RequestKind
from colony.logging import get_logger
from colony.memory.records import Skill
from colony.memory.store import MemoryStore
from colony.protocols.gateway import Gateway
from colony.tasks import Goal, SkillHint, Task, normalize_description

logger = get_logger("router")

_BULLET = re.compile(r"^(?P<indent>\s*)(?:[-*+•]|\d+[.)])\s+(?P<body>.*)$")
_TAG = re.compile(r"^\[(?P<tag>[\w-]+)\]\s*(?P<body>.*)$")
_SENTENCE = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9])")
_THEN = re.compile(r"(?:,\s*|\s+)(?:and\s+)?then\s+", re.IGNORECASE)
_LEADING = re.compile(r"^(?:and|then|first|next|finally|also|afterwards)\b[\s,]*", re.IGNORECASE)

DECOMPOSER_SYSTEM = (
    "Split the goal into independent subtasks. Reply with a JSON array only. "
    'Each item is {"description": str, "specialization": str, "subtasks": [...]} '
    "where subtasks is optional and uses the same shape."
)


@dataclass
class SubtaskSpec:
    """A decomposed piece of a goal, before it becomes a Task."""

    description: str
    specialization: str
    children: list[SubtaskSpec] = field(default_factory=list)


@runtime_checkable
class Decomposer(Protocol):
    """Splits goal text into tagged subtask specs."""

    def decompose(self, text: str, hints: dict[str, str] | None = None) -> list[SubtaskSpec]: ...


class RuleDecomposer:
    """
    Deterministic decomposition by text structure and keywords.

    Goals split on lines, bulleted or numbered items, semicolons, sentence
    boundaries and the connective "then". A bullet indented deeper than the
    bullet before it becomes that bullet's child. A leading ``[tag]`` names
    the specialization explicitly; otherwise per-goal hints and then the
    keyword table decide, falling back to the default specialization.
    """

    def __init__(
        self,
        keywords: dict[str, list[str]] | None = None,
        default_specialization: str = "generalist",
    ):
        self.keywords = keywords if keywords is not None else RouterConfig().specialization_keywords
        self.default_specialization = default_specialization

    def tag(self, clause: str, hints: dict[str, str] | None = None) -> str:
        """Choose a specialization for one clause."""
        padded = f" {normalize_description(clause)} "
        for keyword, specialization in (hints or {}).items():
            if f" {normalize_description(keyword)} " in padded:
                return specialization

        best, best_score = self.default_specialization, 0
        for specialization, words in self.keywords.items():
            score = sum(1 for w in words if f" {normalize_description(w)} " in padded)
            if score > best_score:
                best, best_score = specialization, score
        return best

    def _clauses(self, text: str) -> list[str]:
        clauses: list[str] = []
        for part in text.split(";"):
            for sentence in _SENTENCE.split(part):
                clauses.extend(_THEN.split(sentence))
        cleaned = []
        for clause in clauses:
            clause = _LEADING.sub("", clause.strip()).strip(" \t,.;:!")
            if re.search(r"\w", clause):
                cleaned.append(clause)
        return cleaned

    def _spec(self, clause: str, hints: dict[str, str] | None) -> SubtaskSpec:
        match = _TAG.match(clause)
        if match:
            return SubtaskSpec(match.group("body").strip(), match.group("tag").lower())
        return SubtaskSpec(clause, self.tag(clause, hints))

    def decompose(self, text: str, hints: dict[str, str] | None = None) -> list[SubtaskSpec]:
        roots: list[SubtaskSpec] = []
        # (indent, spec) of the open bullet chain, shallowest first
        stack: list[tuple[int, SubtaskSpec]] = []

        for line in text.splitlines():
            if not line.strip():
                continue
            bullet = _BULLET.match(line)
            if bullet is None:
                stack.clear()
                roots.extend(self._spec(c, hints) for c in self._clauses(line))
                continue

            indent = len(bullet.group("indent").expandtabs(4))
            while stack and stack[-1][0] >= indent:
                stack.pop()
            specs = [self._spec(c, hints) for c in self._clauses(bullet.group("body"))]
            if not specs:
                continue
            siblings = stack[-1][1].children if stack else roots
            siblings.extend(specs)
            stack.append((indent, specs[-1]))
        return roots


class ModelDecomposer:
    """Asks the gateway model to decompose; falls back to rules on bad output."""

    def __init__(
        self,
        gateway: Gateway,
        model_name: str = "default",
        timeout: float = 30.0,
        fallback: RuleDecomposer | None = None,
    ):
        self.gateway = gateway
        self.model_name = model_name
        self.timeout = timeout
        self.fallback = fallback or RuleDecomposer()

    @staticmethod
    def _parse_items(items: Any, default: str) -> list[SubtaskSpec]:
        if not isinstance(items, list):
            raise ValueError("Expected a JSON array of subtasks")
        specs = []
        for item in items:
            if isinstance(item, str):
                item = {"description": item}
            if not isinstance(item, dict) or not str(item.get("description", "")).strip():
                raise ValueError(f"Malformed subtask: {item!r}")
            specs.append(
                SubtaskSpec(
                    description=str(item["description"]).strip(),
                    specialization=str(item.get("specialization") or default).strip().lower(),
                    children=ModelDecomposer._parse_items(item.get("subtasks", []), default),
                )
            )
        return specs

    def parse(self, payload: Any) -> list[SubtaskSpec]:
        """Parse a model reply into subtask specs. Raises ValueError."""
        if isinstance(payload, str):
            start, end = payload.find("["), payload.rfind("]")
            if start < 0 or end <= start:
                raise ValueError("No JSON array in model reply")
            try:
                payload = json.loads(payload[start : end + 1])
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in model reply: {e}") from e
        return self._parse_items(payload, self.fallback.default_specialization)

    def decompose(self, text: str, hints: dict[str, str] | None = None) -> list[SubtaskSpec]:
        prompt = f"Goal:\n{text}"
        if hints:
            prompt += "\n\nSpecialization hints: " + ", ".join(
                f"{k} -> {v}" for k, v in sorted(hints.items())
            )
        request = GatewayRequest(
            kind=RequestKind.MODEL,
            name=self.model_name,
            arguments={"prompt": prompt, "system": DECOMPOSER_SYSTEM},
            timeout=self.timeout,
        )
        response = self.gateway.invoke(request)
        if not response.ok:
            logger.warning(
                f"Model decomposition failed ({response.status.value}), using rule decomposer"
            )
            return self.fallback.decompose(text, hints)
        try:
            return self.parse(response.payload)
        except ValueError as e:
            logger.warning(f"Unusable model decomposition ({e}), using rule decomposer")
            return self.fallback.decompose(text, hints)


class TaskRouter:
    """Turns goals into routed tasks, warm when memory holds a good skill."""

    def __init__(
        self,
        memory: MemoryStore,
        config: RouterConfig | None = None,
        decomposer: Decomposer | None = None,
    ):
        self.memory = memory
        self.config = config or RouterConfig()
        self.decomposer: Decomposer = decomposer or RuleDecomposer(
            self.config.specialization_keywords, self.config.default_specialization
        )

    def route(self, goal: Goal, options: GoalOptions | None = None) -> list[Task]:
        """Decompose ``goal`` into tasks, parents before children.

        Raises:
            EmptyDecomposition: If decomposition yields no tasks.
        """
        hints = options.specialization_hints if options else {}
        specs = self.decomposer.decompose(goal.text, hints)
        tasks: list[Task] = []
        self._flatten(goal, specs, None, tasks)
        if not tasks:
            raise EmptyDecomposition(goal.id, goal.text)

        parents = {t.parent_id for t in tasks if t.parent_id is not None}
        warm = 0
        for task in tasks:
            if task.id in parents:
                continue
            task.hint = self._hint_for(task)
            warm += task.warm
        logger.info(
            f"Routed goal {goal.id[:8]} into {len(tasks)} tasks "
            f"({len(tasks) - len(parents)} leaves, {warm} warm)"
        )
        return tasks

    def _flatten(
        self,
        goal: Goal,
        specs: list[SubtaskSpec],
        parent_id: str | None,
        out: list[Task],
    ) -> None:
        for spec in specs:
            # Ids derive from the goal and position so routing is reproducible
            task = Task(
                id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"colony:{goal.id}/{len(out)}")),
                goal_id=goal.id,
                description=spec.description,
                specialization=spec.specialization,
                parent_id=parent_id,
            )
            out.append(task)
            self._flatten(goal, spec.children, task.id, out)

    def find_skill(self, task: Task) -> Skill | None:
        """Exact fingerprint-class match first, then the nearest accepting skill."""
        skill = self.memory.best_skill(task.fingerprint)
        if skill is not None or not self.config.use_similar_skills:
            return skill

        candidates = [
            s
            for s in self.memory.all_skills()
            if s.precondition.accepts(task.specialization, task.description)
        ]
        if not candidates:
            return None
        query = self.memory.embed(f"{task.specialization} {task.description}")
        sims = self.memory.index.similarities(query, [s.embedding for s in candidates])
        best: Skill | None = None
        best_sim = self.config.similar_skill_threshold
        for skill, sim in zip(candidates, sims):
            # Candidates come in a fixed order; strict > keeps the earlier one on ties
            if sim > best_sim or (best is None and sim >= best_sim):
                best, best_sim = skill, sim
        return best

    def _hint_for(self, task: Task) -> SkillHint | None:
        skill = self.find_skill(task)
        if skill is None:
            return None
        if skill.success_rate <= self.config.confidence_floor:
            logger.debug(
                f"Skill {skill.name!r} below confidence floor "
                f"({skill.success_rate:.2f} <= {self.config.confidence_floor:.2f})"
            )
            return None
        logger.debug(f"Task {task.id[:8]} routed warm with skill {skill.name!r}")
        return SkillHint(
            skill_id=skill.id,
            skill_name=skill.name,
            template=skill.template,
            success_rate=skill.success_rate,
        )
