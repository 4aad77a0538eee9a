"""
Phase state machine for managed databases.

``status.phase`` is written only by the reconciler, and only through
transitions listed here. The absence of a phase (``None``) is the initial
state of a freshly created object.

Usage:
    >>> from dbaas_operator.core.state_machine import PhaseStateMachine
    >>> from dbaas_operator.models.database import Phase
    >>>
    >>> PhaseStateMachine.can_transition(None, Phase.CREATING)
    True
    >>> PhaseStateMachine.can_transition(Phase.HALTED, Phase.RUNNING)
    False
"""
from typing import Dict, Optional, Set

import structlog

from dbaas_operator.models.database import Phase

logger = structlog.get_logger(__name__)


class PhaseStateMachine:
    """
    Allowed phase transitions.

    Staying in the same phase is always allowed and is not a transition.
    """

    TRANSITIONS: Dict[Optional[Phase], Set[Phase]] = {
        None: {
            Phase.CREATING,     # First observation
            Phase.FAILED,       # Invalid from the start
            Phase.TERMINATING,  # Deleted before it was ever reconciled
        },
        Phase.CREATING: {
            Phase.INITIALIZING,  # Init/restore requested
            Phase.RUNNING,       # Workloads converged and ready
            Phase.HALTED,        # Halted before it came up
            Phase.FAILED,
            Phase.TERMINATING,
        },
        Phase.INITIALIZING: {
            Phase.RUNNING,       # Init marker observed
            Phase.HALTED,
            Phase.FAILED,
            Phase.TERMINATING,
        },
        Phase.RUNNING: {
            Phase.INITIALIZING,  # Init added later and not yet applied
            Phase.HALTED,
            Phase.FAILED,
            Phase.TERMINATING,
        },
        Phase.HALTED: {
            Phase.CREATING,      # spec.halted cleared
            Phase.FAILED,
            Phase.TERMINATING,
        },
        Phase.FAILED: {
            Phase.CREATING,      # Spec changed and validates again
            Phase.TERMINATING,
        },
        Phase.TERMINATING: set(),  # Object is going away
    }

    @classmethod
    def can_transition(cls, from_phase: Optional[Phase], to_phase: Phase) -> bool:
        """
        Check if a phase transition is valid.

        Example:
            >>> PhaseStateMachine.can_transition(Phase.FAILED, Phase.CREATING)
            True
            >>> PhaseStateMachine.can_transition(Phase.TERMINATING, Phase.RUNNING)
            False
        """
        if from_phase == to_phase:
            return True
        return to_phase in cls.TRANSITIONS.get(from_phase, set())

    @classmethod
    def validate_transition(
        cls,
        from_phase: Optional[Phase],
        to_phase: Phase,
        database: Optional[str] = None,
    ) -> None:
        """
        Validate a phase transition and raise if it is not allowed.

        Raises:
            ValueError: If the transition is not allowed
        """
        if cls.can_transition(from_phase, to_phase):
            return

        from_value = from_phase.value if from_phase else "<none>"
        logger.error(
            "invalid_phase_transition",
            database=database,
            from_phase=from_value,
            to_phase=to_phase.value,
            allowed_phases=[p.value for p in cls.TRANSITIONS.get(from_phase, set())],
        )
        error_msg = f"Invalid phase transition from {from_value} to {to_phase.value}"
        if database:
            error_msg += f" for database {database}"
        raise ValueError(error_msg)
