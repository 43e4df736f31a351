"""Explicit state machines for OAuth flows.

Each flow declares an Enum of states and a transition table; FlowStateMachine
enforces the table so a flow can never, for example, exchange a code it never
received or report success after being cancelled.

Example:
    class MyState(Enum):
        IDLE = "Idle"
        DONE = "Done"

    machine = FlowStateMachine("my-flow", MyState.IDLE, {MyState.IDLE: {MyState.DONE}})
    machine.transition(MyState.DONE)
    assert machine.is_terminal
"""

from __future__ import annotations

__all__ = ["FlowStateMachine"]

from enum import Enum
from typing import Generic, Mapping, TypeVar

from entra_token.exceptions import InvalidFlowTransition
from entra_token.telemetry.system.system_logger import get_system_logger

S = TypeVar("S", bound=Enum)


class FlowStateMachine(Generic[S]):
    """Tracks the current state of one flow attempt.

    Args:
        flow_name: Name used in errors and debug logs.
        initial: Starting state.
        transitions: Allowed next states per state. States without an entry
            (or with an empty set) are terminal.
    """

    def __init__(self, flow_name: str, initial: S, transitions: Mapping[S, set[S]]) -> None:
        self._flow_name = flow_name
        self._state = initial
        self._transitions = transitions
        self._history: list[S] = [initial]

    @property
    def state(self) -> S:
        return self._state

    @property
    def history(self) -> list[S]:
        """States visited so far, in order."""
        return list(self._history)

    @property
    def is_terminal(self) -> bool:
        return not self._transitions.get(self._state)

    def can_transition(self, target: S) -> bool:
        return target in self._transitions.get(self._state, set())

    def transition(self, target: S) -> None:
        """Move to ``target``.

        Raises:
            InvalidFlowTransition: ``target`` is not reachable from the current state.
        """
        if not self.can_transition(target):
            raise InvalidFlowTransition(
                f"{self._flow_name}: illegal transition {self._state.value} -> {target.value}"
            )
        get_system_logger().debug(
            {
                "event": "flow_transition",
                "flow": self._flow_name,
                "from": self._state.value,
                "to": target.value,
            }
        )
        self._state = target
        self._history.append(target)

    def fail_if_active(self, target: S) -> None:
        """Move to a failure state unless the flow already ended."""
        if not self.is_terminal and self.can_transition(target):
            self.transition(target)
