"""
Deskpilot Execution State Machine

Tracks one tool execution attempt through its lifecycle:

    RECEIVED → VALIDATED → LOCK_ACQUIRED → EXECUTING
             → {SUCCEEDED | FAILED | BLOCKED | DUPLICATE}
             → RESPONSE_GENERATED → DONE

Early exits (validation, policy, integration) jump straight to a
terminal outcome. Every move is checked against ALLOWED_TRANSITIONS;
an illegal move is a programming error and raises IllegalTransitionError.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from deskpilot.core.models import ExecutionState, ReasonCode
from deskpilot.exceptions import IllegalTransitionError
from deskpilot.logging import get_logger

logger = get_logger("deskpilot.engine.state")

S = ExecutionState

ALLOWED_TRANSITIONS: dict[ExecutionState, frozenset[ExecutionState]] = {
    S.RECEIVED: frozenset({S.VALIDATED, S.BLOCKED, S.FAILED}),
    S.VALIDATED: frozenset({S.LOCK_ACQUIRED, S.BLOCKED, S.FAILED, S.DONE}),
    S.LOCK_ACQUIRED: frozenset({S.EXECUTING, S.DUPLICATE, S.FAILED}),
    S.EXECUTING: frozenset({S.SUCCEEDED, S.FAILED, S.BLOCKED}),
    S.SUCCEEDED: frozenset({S.RESPONSE_GENERATED}),
    S.FAILED: frozenset({S.RESPONSE_GENERATED, S.DONE}),
    S.BLOCKED: frozenset({S.RESPONSE_GENERATED, S.DONE}),
    S.DUPLICATE: frozenset({S.RESPONSE_GENERATED, S.DONE}),
    S.RESPONSE_GENERATED: frozenset({S.DONE}),
    S.DONE: frozenset(),
}

OUTCOME_STATES = frozenset({S.SUCCEEDED, S.FAILED, S.BLOCKED, S.DUPLICATE})


@dataclass
class Transition:
    source: ExecutionState
    target: ExecutionState
    at: float
    reason_code: ReasonCode | None = None


@dataclass
class ExecutionTrace:
    """Ordered record of the states one execution passed through.

    ``VALIDATED → DONE`` only covers a busy lock: nothing ran and no
    outcome is recorded.
    """

    tool_name: str = ""
    conversation_id: str = ""
    state: ExecutionState = S.RECEIVED
    transitions: list[Transition] = field(default_factory=list)

    def advance(self, target: ExecutionState, reason_code: ReasonCode | None = None) -> ExecutionState:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise IllegalTransitionError(self.state.value, target.value)
        self.transitions.append(Transition(self.state, target, time.monotonic(), reason_code))
        logger.debug(
            "%s -> %s",
            self.state.value,
            target.value,
            extra={
                "conversation_id": self.conversation_id,
                "tool_name": self.tool_name,
                "state": target.value,
            },
        )
        self.state = target
        return target

    def finish(self, responded: bool = False) -> ExecutionState:
        """Move to DONE.

        Passes through RESPONSE_GENERATED after a success, or after any
        outcome when ``responded`` says a reply was produced for it.
        """
        if self.state == S.SUCCEEDED or (responded and self.state in OUTCOME_STATES):
            self.advance(S.RESPONSE_GENERATED)
        if self.state != S.DONE:
            self.advance(S.DONE)
        return self.state

    @property
    def outcome(self) -> ExecutionState | None:
        for t in reversed(self.transitions):
            if t.target in OUTCOME_STATES:
                return t.target
        return None

    @property
    def path(self) -> list[ExecutionState]:
        return [S.RECEIVED] + [t.target for t in self.transitions]

    @property
    def is_terminal(self) -> bool:
        return self.state == S.DONE
