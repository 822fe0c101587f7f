from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from . import guards
from .errors import DependencyCycleError, ResolutionError
from .types import EffectiveConfig, HostConfig, OperationSpec, Plan, PlanStep, Play, resource_name

logger = logging.getLogger(__name__)

FLUSH_TYPE = "flush_handlers"
RUNTIME_NAMES = {"facts"}


@dataclass(frozen=True)
class TagFilter:
    include: frozenset[str] = frozenset()
    exclude: frozenset[str] = frozenset()

    @classmethod
    def from_options(cls, tags: Iterable[str] = (), skip_tags: Iterable[str] = ()) -> "TagFilter":
        return cls(include=frozenset(_split(tags)), exclude=frozenset(_split(skip_tags)))

    def allows(self, tags: frozenset[str]) -> bool:
        if tags & self.exclude:
            return False
        if "never" in tags and not tags & self.include - {"all"}:
            return False
        if self.include and "all" not in self.include:
            return bool(tags & self.include) or "always" in tags
        return True


def _split(values: Iterable[str]) -> list[str]:
    items: list[str] = []
    for value in values:
        items.extend(part.strip() for part in value.split(",") if part.strip())
    return items


def _flush(phase: str) -> OperationSpec:
    return OperationSpec(type=FLUSH_TYPE, data={"name": f"end of {phase}"})


class PlanBuilder:
    """Turns a play into an ordered, host-specific plan."""

    def build(
        self,
        host: HostConfig,
        config: EffectiveConfig,
        play: Play,
        tag_filter: Optional[TagFilter] = None,
    ) -> Plan:
        tag_filter = tag_filter or TagFilter()
        entries = self._assemble(play)
        handlers = self._handler_map(play)
        registered: dict[str, list[int]] = {}
        for idx, (spec, _) in enumerate(entries):
            if spec.register:
                registered.setdefault(spec.register, []).append(idx)

        steps: list[PlanStep] = []
        for idx, (spec, phase) in enumerate(entries):
            for target in spec.notify:
                if target not in handlers:
                    raise ResolutionError(f"task {self._describe(spec)} notifies unknown handler '{target}'")
            steps.append(self._make_step(idx, spec, phase, config, tag_filter, set(registered)))

        ordered = self._order(steps, registered)
        logger.debug("plan host=%s play=%s steps=%s", host.name, play.name, len(ordered))
        return Plan(
            host=host,
            config=config,
            steps=tuple(ordered),
            handlers=handlers,
            gather_facts=play.gather_facts,
        )

    # Assembly ------------------------------------------------------------
    @staticmethod
    def _assemble(play: Play) -> list[tuple[OperationSpec, str]]:
        entries: list[tuple[OperationSpec, str]] = []

        def add_flush(phase: str) -> None:
            if entries and not entries[-1][0].is_flush:
                entries.append((_flush(phase), phase))

        entries.extend((spec, "pre_tasks") for spec in play.pre_tasks)
        add_flush("pre_tasks")
        for role in play.roles:
            phase = f"role:{role.name}"
            entries.extend((spec, phase) for spec in role.tasks)
            if play.flush_after_roles:
                add_flush(phase)
        entries.extend((spec, "tasks") for spec in play.tasks)
        add_flush("tasks")
        entries.extend((spec, "post_tasks") for spec in play.post_tasks)
        if not entries or not entries[-1][0].is_flush:
            entries.append((_flush("play"), "post_tasks"))
        return entries

    @staticmethod
    def _handler_map(play: Play) -> dict[str, OperationSpec]:
        handlers: dict[str, OperationSpec] = {}
        for spec in play.all_handlers():
            for name in (spec.id, *spec.listen):
                if name:
                    handlers[name] = spec
        return handlers

    # Steps ---------------------------------------------------------------
    def _make_step(
        self,
        idx: int,
        spec: OperationSpec,
        phase: str,
        config: EffectiveConfig,
        tag_filter: TagFilter,
        registered: set[str],
    ) -> PlanStep:
        if spec.is_flush:
            return PlanStep(index=idx, spec=spec, phase=phase)
        if not tag_filter.allows(spec.tags):
            return PlanStep(index=idx, spec=spec, phase=phase, skip_reason="tags")
        if not spec.when:
            return PlanStep(index=idx, spec=spec, phase=phase)

        names: set[str] = set()
        for expression in spec.when:
            names |= guards.referenced_names(expression)
        if names & (registered | RUNTIME_NAMES):
            return PlanStep(index=idx, spec=spec, phase=phase, deferred_guard=True)
        if guards.evaluate(spec.when, config.values):
            return PlanStep(index=idx, spec=spec, phase=phase)
        return PlanStep(index=idx, spec=spec, phase=phase, skip_reason="guard")

    # Ordering ------------------------------------------------------------
    def _order(self, steps: list[PlanStep], registered: dict[str, list[int]]) -> list[PlanStep]:
        ids: dict[str, int] = {}
        for step in steps:
            for identifier in self._identifiers(step):
                ids.setdefault(identifier, step.index)

        deps: dict[int, set[int]] = {step.index: set() for step in steps}
        for step in steps:
            spec = step.spec
            names: set[str] = set()
            for expression in spec.when:
                names |= guards.referenced_names(expression)
            names |= guards.references_in(spec.data)
            for name in names:
                producers = [p for p in registered.get(name, []) if p != step.index]
                earlier = [p for p in producers if p < step.index]
                deps[step.index].update(earlier or producers)
            for dep in spec.depends_on:
                if dep in ids and ids[dep] != step.index:
                    deps[step.index].add(ids[dep])

        dependents: dict[int, list[int]] = {step.index: [] for step in steps}
        in_degree = {index: len(required) for index, required in deps.items()}
        for index, required in deps.items():
            for producer in required:
                dependents[producer].append(index)

        # lowest declaration index first keeps declaration order when no edges exist
        ready = [index for index, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: list[int] = []
        while ready:
            current = heapq.heappop(ready)
            ordered.append(current)
            for node in dependents[current]:
                in_degree[node] -= 1
                if in_degree[node] == 0:
                    heapq.heappush(ready, node)

        if len(ordered) != len(steps):
            by_index = {step.index: step for step in steps}
            remaining = [by_index[i] for i in sorted(set(by_index) - set(ordered))]
            raise DependencyCycleError(self._describe(step.spec) for step in remaining)
        by_index = {step.index: step for step in steps}
        return [by_index[index] for index in ordered]

    @staticmethod
    def _identifiers(step: PlanStep) -> list[str]:
        identifiers: list[str] = []
        if step.spec.id:
            identifiers.append(step.spec.id)
        name = resource_name(step.spec.data)
        if name and not step.flush:
            identifiers.append(f"{step.spec.type}.{name}")
        return identifiers

    @staticmethod
    def _describe(spec: OperationSpec) -> str:
        if spec.id:
            return spec.id
        name = resource_name(spec.data)
        return f"{spec.type}[{name}]" if name else spec.type


def list_tasks(plan: Plan) -> list[str]:
    lines = [f"host: {plan.host.name}"]
    for position, step in enumerate(plan.steps, start=1):
        if step.flush:
            lines.append(f"  {position:>3}. -- flush handlers ({step.spec.data.get('name')})")
            continue
        tags = f" tags={','.join(sorted(step.spec.tags))}" if step.spec.tags else ""
        note = f" (skipped: {step.skip_reason})" if step.skip_reason else ""
        if step.deferred_guard:
            note += " (guard at runtime)"
        lines.append(f"  {position:>3}. [{step.phase}] {step.label}{tags}{note}")
    return lines
