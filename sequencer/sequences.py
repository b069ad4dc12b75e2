"""
Sequence Definition: immutable description of a campaign.

A SequenceDefinition is an ordered list of Steps:
    send    - deliver rendered content on a channel (rate limited)
    wait    - pure scheduling delay, no external call
    branch  - look at the contact's engagement signal and jump

Any step may carry a skip condition ("skip if <outcome> observed, go to
<step>"), which is how "if they already replied, stop" is expressed.

Definitions are frozen dataclasses. Editing a running campaign publishes a
new version; executions keep the version they were enrolled with.
"""

import re
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sequencer.errors import SequenceValidationError
from sequencer.rate_limits import ACTION_KINDS, MESSAGE

END = "end"


class StepKind:
    SEND = "send"
    WAIT = "wait"
    BRANCH = "branch"

    ALL = (SEND, WAIT, BRANCH)


class Outcome:
    """Closed set of engagement outcomes a branch can react to."""

    ACCEPTED = "accepted"
    REPLIED = "replied"
    OPENED = "opened"
    CLICKED = "clicked"
    NONE = "none"

    ALL = (ACCEPTED, REPLIED, OPENED, CLICKED, NONE)
    OBSERVABLE = (ACCEPTED, REPLIED, OPENED, CLICKED)

    @staticmethod
    def parse(value: Any) -> str:
        """Unknown or unsupported outcomes are treated as none."""
        if isinstance(value, str) and value.strip().lower() in Outcome.ALL:
            return value.strip().lower()
        return Outcome.NONE


DELAY_UNITS = {
    "seconds": timedelta(seconds=1),
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}


def parse_delay(value: Any) -> timedelta:
    """
    Accepts a timedelta, a number of seconds, or {"delay": n, "unit": "days"}.
    """
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if isinstance(value, Mapping):
        unit = value.get("unit", "minutes")
        if unit not in DELAY_UNITS:
            raise SequenceValidationError(f"Unknown delay unit: {unit}")
        return DELAY_UNITS[unit] * value.get("delay", 0)
    raise SequenceValidationError(f"Cannot parse delay: {value!r}")


@dataclass(frozen=True)
class SkipCondition:
    outcome: str
    on_skip: str = END


@dataclass(frozen=True)
class Step:
    id: str
    kind: str
    channel: Optional[str] = None
    action: str = MESSAGE
    delay: timedelta = timedelta(0)
    subject: str = ""
    body: str = ""
    condition: Optional[SkipCondition] = None
    # Ordered (outcome, target step id) pairs, branch steps only
    branches: Tuple[Tuple[str, str], ...] = ()
    business_hours: bool = False
    name: str = ""

    @classmethod
    def from_dict(cls, data: Mapping) -> "Step":
        condition = None
        if data.get("condition"):
            cond = data["condition"]
            condition = SkipCondition(
                outcome=Outcome.parse(cond.get("outcome")),
                on_skip=cond.get("on_skip", END),
            )

        branches = data.get("branches") or ()
        if isinstance(branches, Mapping):
            branches = branches.items()
        branch_table = tuple((Outcome.parse(o), target) for o, target in branches)

        return cls(
            id=data["id"],
            kind=data.get("kind", StepKind.SEND),
            channel=data.get("channel"),
            action=data.get("action", MESSAGE),
            delay=parse_delay(data.get("delay")),
            subject=data.get("subject", ""),
            body=data.get("body", ""),
            condition=condition,
            branches=branch_table,
            business_hours=bool(data.get("business_hours", False)),
            name=data.get("name", ""),
        )

    def to_dict(self) -> Dict:
        data = {
            "id": self.id,
            "kind": self.kind,
            "channel": self.channel,
            "action": self.action,
            "delay": self.delay.total_seconds(),
            "subject": self.subject,
            "body": self.body,
            "branches": [list(pair) for pair in self.branches],
            "business_hours": self.business_hours,
            "name": self.name,
        }
        if self.condition:
            data["condition"] = {"outcome": self.condition.outcome, "on_skip": self.condition.on_skip}
        return data


@dataclass(frozen=True)
class SequenceDefinition:
    id: str
    steps: Tuple[Step, ...]
    platforms: Tuple[str, ...]
    version: int = 1
    name: str = ""

    def __post_init__(self):
        self.validate()

    # ── lookup ───────────────────────────────────────────────────────

    def step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def has_step(self, step_id: str) -> bool:
        return any(step.id == step_id for step in self.steps)

    @property
    def first_step(self) -> Step:
        return self.steps[0]

    def following(self, step_id: str) -> Optional[Step]:
        """The step after `step_id` in declaration order (None after the last)."""
        ids = [s.id for s in self.steps]
        index = ids.index(step_id)
        if index + 1 < len(self.steps):
            return self.steps[index + 1]
        return None

    def is_terminal(self, step_id: str) -> bool:
        """`end` completes the execution unless a real step carries that id."""
        return step_id == END and not self.has_step(END)

    # ── validation ───────────────────────────────────────────────────

    def _check_target(self, step: Step, target: str) -> None:
        if target != END and not self.has_step(target):
            raise SequenceValidationError(f"Step {step.id} points at unknown step '{target}'")

    def validate(self) -> None:
        if not self.steps:
            raise SequenceValidationError(f"Sequence {self.id} has no steps")
        if not self.platforms:
            raise SequenceValidationError(f"Sequence {self.id} allows no platforms")

        ids = [s.id for s in self.steps]
        if len(ids) != len(set(ids)):
            raise SequenceValidationError(f"Sequence {self.id} has duplicate step ids")

        for step in self.steps:
            if step.kind not in StepKind.ALL:
                raise SequenceValidationError(f"Step {step.id}: unknown kind '{step.kind}'")

            if step.kind == StepKind.SEND:
                if step.channel not in self.platforms:
                    raise SequenceValidationError(
                        f"Step {step.id}: channel '{step.channel}' not in {list(self.platforms)}"
                    )
                if step.action not in ACTION_KINDS:
                    raise SequenceValidationError(f"Step {step.id}: unknown action '{step.action}'")

            if step.kind == StepKind.BRANCH:
                if not step.branches:
                    raise SequenceValidationError(f"Branch step {step.id} has no condition table")
                if not step.channel:
                    raise SequenceValidationError(f"Branch step {step.id} needs a channel to observe")
                for _, target in step.branches:
                    self._check_target(step, target)

            if step.condition:
                if step.condition.outcome == Outcome.NONE:
                    raise SequenceValidationError(f"Step {step.id}: skip condition needs an outcome")
                self._check_target(step, step.condition.on_skip)

    # ── (de)serialization ────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: Mapping) -> "SequenceDefinition":
        return cls(
            id=data["id"],
            version=data.get("version", 1),
            name=data.get("name", ""),
            platforms=tuple(data.get("platforms", ())),
            steps=tuple(Step.from_dict(s) for s in data.get("steps", ())),
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "version": self.version,
            "name": self.name,
            "platforms": list(self.platforms),
            "steps": [s.to_dict() for s in self.steps],
        }

    def with_version(self, version: int) -> "SequenceDefinition":
        return replace(self, version=version)


# ==============================================================================
# Content rendering
# ==============================================================================

PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


@dataclass(frozen=True)
class RenderedContent:
    subject: str
    body: str


def _lookup(source: Optional[Mapping], path: str) -> Any:
    if not source:
        return None
    value: Any = source
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return None
        value = value[part]
    return value


def render_template(template: str, contact: Mapping, variables: Optional[Mapping] = None) -> str:
    """
    Substitute {{field}} placeholders from the contact, then from campaign
    variables. Anything that cannot be resolved is left verbatim so partial
    contact data never blocks a send.
    """
    def substitute(match):
        key = match.group(1)
        value = _lookup(contact, key)
        if value is None:
            value = _lookup(variables, key)
        if value is None:
            return match.group(0)
        return str(value)

    return PLACEHOLDER.sub(substitute, template or "")


def resolve(step: Step, contact: Mapping, variables: Optional[Mapping] = None) -> RenderedContent:
    return RenderedContent(
        subject=render_template(step.subject, contact, variables),
        body=render_template(step.body, contact, variables),
    )


# ==============================================================================
# Branching
# ==============================================================================

def default_next(definition: SequenceDefinition, current: str) -> str:
    following = definition.following(current)
    return following.id if following else END


def next_step(definition: SequenceDefinition, current: str, observed: Any) -> str:
    """
    Walk the current step's condition table for the observed outcome. If
    nothing matches, continue with the following step (or `end`).
    """
    outcome = Outcome.parse(observed)
    step = definition.step(current)
    for table_outcome, target in step.branches:
        if table_outcome == outcome:
            return target
    return default_next(definition, current)


def _flag(signal: Any, name: str) -> bool:
    if isinstance(signal, Mapping):
        return bool(signal.get(name))
    return bool(getattr(signal, name, False))


def observed_outcome(signal: Any, candidates: List[str] = None) -> str:
    """
    First candidate outcome present in a gateway signal, in candidate order.
    Defaults to checking the strongest signals first.
    """
    order = candidates or [Outcome.REPLIED, Outcome.ACCEPTED, Outcome.CLICKED, Outcome.OPENED]
    for outcome in order:
        if outcome in Outcome.OBSERVABLE and _flag(signal, outcome):
            return outcome
    return Outcome.NONE


def branch_candidates(step: Step) -> List[str]:
    """Outcomes a branch step reacts to, in table order."""
    return [outcome for outcome, _ in step.branches if outcome != Outcome.NONE]
