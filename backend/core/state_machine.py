"""
BATCH LIFECYCLE STATE MACHINE

A small transition table for billing batches:

    STAGED ──post──▶ PROCESSING ──▶ POSTED   (terminal)
      ▲                  │
      │                  └────────▶ FAILED   (terminal, retryable)
      └── (no way back)  FAILED ──retry──▶ PROCESSING

Usage:
    machine = create_batch_state_machine()
    machine.validate_transition(batch["status"], BatchStatus.PROCESSING)
    update = machine.get_status_update(BatchStatus.PROCESSING)
    history = machine.get_history_entry("STAGED", "PROCESSING", user_id)
"""

from typing import Dict, Any, Optional, List, Set, Tuple
from datetime import datetime
from enum import Enum
import logging

from core.billing_errors import InvalidStateError

logger = logging.getLogger(__name__)


class BatchStatus(str, Enum):
    STAGED = "STAGED"
    PROCESSING = "PROCESSING"
    POSTED = "POSTED"
    FAILED = "FAILED"


class InvalidTransitionError(InvalidStateError):
    """Raised when attempting an unregistered state transition."""
    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        super().__init__(
            f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}",
            {"from_state": from_state, "to_state": to_state, "allowed": self.allowed}
        )


def _state_value(state) -> str:
    return state.value if isinstance(state, Enum) else state


class StateMachine:
    """
    Transition table for one entity type.

    The machine does not touch storage. Callers validate a transition, then
    apply get_status_update() / get_history_entry() inside their own
    conditional update so the state change and the data change commit together.
    """

    def __init__(
        self,
        entity_name: str,
        status_field: str = "status",
        history_field: Optional[str] = "state_history"
    ):
        self.entity_name = entity_name
        self.status_field = status_field
        self.history_field = history_field
        self._transitions: Set[Tuple[str, str]] = set()

    def register(self, from_state, to_state) -> "StateMachine":
        """Register a transition. Returns self for chaining."""
        key = (_state_value(from_state), _state_value(to_state))
        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Duplicate transition {self.entity_name}: '{key[0]}' -> '{key[1]}'"
            )
        self._transitions.add(key)
        return self

    def get_allowed_transitions(self, from_state) -> List[str]:
        src = _state_value(from_state)
        return sorted(dst for (s, dst) in self._transitions if s == src)

    def can_transition(self, from_state, to_state) -> bool:
        return (_state_value(from_state), _state_value(to_state)) in self._transitions

    def validate_transition(self, from_state, to_state) -> None:
        """Raise InvalidTransitionError unless from_state -> to_state is registered."""
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=_state_value(from_state),
                to_state=_state_value(to_state),
                allowed=self.get_allowed_transitions(from_state)
            )

    def get_status_update(self, to_state) -> Dict[str, Any]:
        return {
            self.status_field: _state_value(to_state),
            f"{self.status_field}_changed_at": datetime.utcnow()
        }

    def get_history_entry(
        self,
        from_state,
        to_state,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return {
            "from_state": _state_value(from_state),
            "to_state": _state_value(to_state),
            "transitioned_at": datetime.utcnow(),
            "transitioned_by": user_id,
            "metadata": metadata or {}
        }

    def __repr__(self):
        return f"StateMachine({self.entity_name}, transitions={len(self._transitions)})"


def create_batch_state_machine() -> StateMachine:
    """Billing batch lifecycle."""
    machine = StateMachine("billing_batch")
    machine.register(BatchStatus.STAGED, BatchStatus.PROCESSING)
    machine.register(BatchStatus.FAILED, BatchStatus.PROCESSING)
    machine.register(BatchStatus.PROCESSING, BatchStatus.POSTED)
    machine.register(BatchStatus.PROCESSING, BatchStatus.FAILED)
    return machine


batch_state_machine = create_batch_state_machine()
