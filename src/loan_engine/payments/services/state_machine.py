"""Payment intent state machine with transition validation."""

from __future__ import annotations

from loan_engine.payments.model import IntentState


class InvalidTransitionError(Exception):
    """Raised when code asks for a transition the state machine forbids."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class IntentStateMachine:
    """State machine for payment intents.

    Allowed transitions:
    - PENDING → CONFIRMED (triggers allocation)
    - PENDING → FAILED
    - PENDING → EXPIRED (sweep only)

    Every other state is terminal. A request against a terminal intent is
    not an error at the ledger boundary; the ledger reports it as a lost
    compare-and-swap instead of calling validate_transition.
    """

    VALID_TRANSITIONS: dict[IntentState, list[IntentState]] = {
        IntentState.PENDING: [
            IntentState.CONFIRMED,
            IntentState.FAILED,
            IntentState.EXPIRED,
        ],
        IntentState.CONFIRMED: [],
        IntentState.FAILED: [],
        IntentState.EXPIRED: [],
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is allowed."""
        try:
            source = IntentState(from_status)
            target = IntentState(to_status)
        except ValueError:
            return False
        return target in cls.VALID_TRANSITIONS[source]

    @classmethod
    def validate_target(cls, to_status: str) -> IntentState:
        """Validate that a state can ever be the target of a transition.

        Raises:
            InvalidTransitionError: If nothing may transition into it
        """
        try:
            target = IntentState(to_status)
        except ValueError:
            raise InvalidTransitionError(IntentState.PENDING.value, str(to_status), "unknown state")
        if target not in cls.VALID_TRANSITIONS[IntentState.PENDING]:
            raise InvalidTransitionError(
                IntentState.PENDING.value,
                target.value,
                "only terminal states can be targeted",
            )
        return target

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)."""
        return not cls.VALID_TRANSITIONS.get(IntentState(status), [])
