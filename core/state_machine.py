"""
Declared-edge state machines for the pipeline.

Three maps are registered on the default machine:

  processing_status   the message record's lifecycle (pending → processing →
                      completed/failed/skipped, completed → quote outcomes)
  workflow_stage      one process() run: received → categorizing → … → completed,
                      with side exits to review and failed
  review_status       a review item: pending → in_review → approved/modified/rejected,
                      escalation from either open state

A transition that is not declared raises InvalidTransitionError, so nothing
can jump from pending straight to converted_to_quote.

Usage:
    result = STATE_MACHINE.transition("processing_status", "pending", "processing")
    result.to_state  # "processing"
"""
from __future__ import annotations

import structlog
from typing import Optional

from pydantic import BaseModel

from core.exceptions import InvalidTransitionError
from models.schemas import ProcessingStatus, ReviewStatus, WorkflowStage

logger = structlog.get_logger()


class TransitionDef(BaseModel):
    from_states: list[str]                      # "*" matches any state
    to_state: str
    description: str = ""


class StateMapDef(BaseModel):
    name: str
    states: list[str]
    initial_state: str
    terminal_states: list[str] = []
    transitions: list[TransitionDef] = []


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of a requested transition."""

    def __init__(self, transitioned: bool, machine: str, from_state: str = "",
                 to_state: str = "", description: str = ""):
        self.transitioned = transitioned
        self.machine = machine
        self.from_state = from_state
        self.to_state = to_state
        self.description = description

    def __bool__(self):
        return self.transitioned

    def __repr__(self):
        if self.transitioned:
            return f"<Transition {self.machine}: {self.from_state} → {self.to_state}>"
        return f"<NoTransition {self.machine}: {self.from_state}>"


# ──────────────────────────────────────────────────────────────
#  State Machine
# ──────────────────────────────────────────────────────────────

class StateMachine:
    """Registry of state maps; validates requested transitions against them."""

    def __init__(self):
        self._maps: dict[str, StateMapDef] = {}

    def register_map(self, state_map: StateMapDef):
        errors = self._validate_map(state_map)
        if errors:
            logger.error("invalid_state_map", machine=state_map.name, errors=errors)
            raise ValueError(f"Invalid state map '{state_map.name}': {'; '.join(errors)}")
        self._maps[state_map.name] = state_map
        logger.debug("state_map_registered",
                     machine=state_map.name,
                     states=len(state_map.states),
                     transitions=len(state_map.transitions))

    @staticmethod
    def _validate_map(sm: StateMapDef) -> list[str]:
        """Validate a state map definition. Returns list of error messages."""
        errors = []
        state_set = set(sm.states)

        if sm.initial_state not in state_set:
            errors.append(f"initial_state '{sm.initial_state}' not in states")

        for ts in sm.terminal_states:
            if ts not in state_set:
                errors.append(f"terminal_state '{ts}' not in states")

        for i, t in enumerate(sm.transitions):
            for fs in t.from_states:
                if fs != "*" and fs not in state_set:
                    errors.append(f"transition[{i}] from_state '{fs}' not in states")
            if t.to_state not in state_set:
                errors.append(f"transition[{i}] to_state '{t.to_state}' not in states")

        return errors

    def get_map(self, name: str) -> Optional[StateMapDef]:
        return self._maps.get(name)

    def _find(self, name: str, from_state: str, to_state: str) -> Optional[TransitionDef]:
        state_map = self._maps.get(name)
        if state_map is None:
            raise KeyError(f"unknown state map '{name}'")
        for t in state_map.transitions:
            if t.to_state == to_state and ("*" in t.from_states or from_state in t.from_states):
                return t
        return None

    def can_transition(self, name: str, from_state: str, to_state: str) -> bool:
        return self._find(name, _value(from_state), _value(to_state)) is not None

    def allowed_targets(self, name: str, from_state: str) -> list[str]:
        state_map = self._maps[name]
        from_state = _value(from_state)
        return [
            t.to_state for t in state_map.transitions
            if "*" in t.from_states or from_state in t.from_states
        ]

    def transition(self, name: str, from_state: str, to_state: str) -> TransitionResult:
        """Validate from_state → to_state. Raises InvalidTransitionError if undeclared."""
        from_state, to_state = _value(from_state), _value(to_state)
        t = self._find(name, from_state, to_state)
        if t is None:
            logger.warning("transition_rejected", machine=name,
                           from_state=from_state, to_state=to_state)
            raise InvalidTransitionError(name, from_state, to_state)
        return TransitionResult(True, name, from_state, to_state, t.description)

    def is_terminal(self, name: str, state: str) -> bool:
        return _value(state) in self._maps[name].terminal_states


def _value(state) -> str:
    return getattr(state, "value", state)


# ──────────────────────────────────────────────────────────────
#  Declared maps
# ──────────────────────────────────────────────────────────────

PS = ProcessingStatus
WS = WorkflowStage
RS = ReviewStatus

PROCESSING_STATUS_MAP = StateMapDef(
    name="processing_status",
    states=[s.value for s in PS],
    initial_state=PS.PENDING.value,
    terminal_states=[
        PS.COMPLETED.value, PS.FAILED.value, PS.SKIPPED.value,
        PS.CONVERTED_TO_QUOTE.value, PS.LINKED_TO_EXISTING_QUOTE.value,
        PS.DUPLICATE_DETECTED.value,
    ],
    transitions=[
        TransitionDef(from_states=[PS.PENDING.value, PS.FAILED.value], to_state=PS.PROCESSING.value,
                      description="job picked up (or retried after a transient failure)"),
        TransitionDef(from_states=[PS.PENDING.value, PS.PROCESSING.value], to_state=PS.DUPLICATE_DETECTED.value),
        TransitionDef(from_states=[PS.PENDING.value, PS.PROCESSING.value], to_state=PS.SKIPPED.value),
        TransitionDef(from_states=[PS.PROCESSING.value], to_state=PS.COMPLETED.value),
        TransitionDef(from_states=[PS.PROCESSING.value], to_state=PS.FAILED.value),
        TransitionDef(from_states=[PS.COMPLETED.value], to_state=PS.CONVERTED_TO_QUOTE.value,
                      description="a quote was created from the processed request"),
        TransitionDef(from_states=[PS.COMPLETED.value], to_state=PS.LINKED_TO_EXISTING_QUOTE.value,
                      description="reply attached to the quote it answers"),
    ],
)

WORKFLOW_STAGE_MAP = StateMapDef(
    name="workflow_stage",
    states=[s.value for s in WS],
    initial_state=WS.RECEIVED.value,
    terminal_states=[WS.COMPLETED.value, WS.REVIEW.value, WS.FAILED.value],
    transitions=[
        TransitionDef(from_states=[WS.RECEIVED.value], to_state=WS.CATEGORIZING.value),
        TransitionDef(from_states=[WS.RECEIVED.value], to_state=WS.COMPLETED.value,
                      description="duplicate or already handled"),
        TransitionDef(from_states=[WS.CATEGORIZING.value], to_state=WS.COMPLETED.value,
                      description="non-customer category"),
        TransitionDef(from_states=[WS.CATEGORIZING.value], to_state=WS.VISION_EXTRACTION.value),
        TransitionDef(from_states=[WS.CATEGORIZING.value, WS.VISION_EXTRACTION.value],
                      to_state=WS.VALIDATING.value),
        TransitionDef(from_states=[WS.VALIDATING.value], to_state=WS.MATCHING.value),
        TransitionDef(from_states=[WS.MATCHING.value], to_state=WS.DRAFTING_RESPONSE.value),
        TransitionDef(from_states=[WS.DRAFTING_RESPONSE.value], to_state=WS.SENDING.value),
        TransitionDef(from_states=[WS.SENDING.value], to_state=WS.COMPLETED.value),
        TransitionDef(from_states=[WS.CATEGORIZING.value, WS.VALIDATING.value, WS.DRAFTING_RESPONSE.value],
                      to_state=WS.REVIEW.value),
        TransitionDef(from_states=["*"], to_state=WS.FAILED.value),
    ],
)

REVIEW_STATUS_MAP = StateMapDef(
    name="review_status",
    states=[s.value for s in RS],
    initial_state=RS.PENDING.value,
    terminal_states=[RS.APPROVED.value, RS.MODIFIED.value, RS.REJECTED.value],
    transitions=[
        TransitionDef(from_states=[RS.PENDING.value, RS.ESCALATED.value], to_state=RS.IN_REVIEW.value,
                      description="assigned to a reviewer"),
        TransitionDef(from_states=[RS.IN_REVIEW.value], to_state=RS.APPROVED.value),
        TransitionDef(from_states=[RS.IN_REVIEW.value], to_state=RS.MODIFIED.value),
        TransitionDef(from_states=[RS.IN_REVIEW.value], to_state=RS.REJECTED.value),
        TransitionDef(from_states=[RS.PENDING.value, RS.IN_REVIEW.value], to_state=RS.ESCALATED.value),
    ],
)


def build_state_machine() -> StateMachine:
    sm = StateMachine()
    for state_map in (PROCESSING_STATUS_MAP, WORKFLOW_STAGE_MAP, REVIEW_STATUS_MAP):
        sm.register_map(state_map)
    return sm


STATE_MACHINE = build_state_machine()
