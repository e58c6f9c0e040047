"""Claim state machine implementation."""

from typing import Optional, List, Tuple
from common.enums import ClaimStatus
from sqlalchemy import update
from sqlalchemy.orm import Session
from services.claims.models import Claim, ClaimStateTransition
from datetime import datetime


class StateMachineError(Exception):
    """Raised when an invalid state transition is attempted."""

    pass


class ClaimStateMachine:
    """Enforces valid state transitions for claims."""

    # Define valid transitions as (from_status, to_status) tuples
    VALID_TRANSITIONS = [
        # Pipeline start
        (ClaimStatus.PENDING, ClaimStatus.IN_PROCESS),

        # Pipeline outcomes
        (ClaimStatus.IN_PROCESS, ClaimStatus.VALIDATED),
        (ClaimStatus.IN_PROCESS, ClaimStatus.WITH_GLOSAS),
        (ClaimStatus.IN_PROCESS, ClaimStatus.REJECTED),

        # Re-running the pipeline overwrites previous results
        (ClaimStatus.VALIDATED, ClaimStatus.IN_PROCESS),
        (ClaimStatus.WITH_GLOSAS, ClaimStatus.IN_PROCESS),

        # Liquidation finalization
        (ClaimStatus.VALIDATED, ClaimStatus.LIQUIDATED),
        (ClaimStatus.WITH_GLOSAS, ClaimStatus.LIQUIDATED),

        # Unrecoverable failure from any non-terminal state
        (ClaimStatus.PENDING, ClaimStatus.REJECTED),
        (ClaimStatus.VALIDATED, ClaimStatus.REJECTED),
        (ClaimStatus.WITH_GLOSAS, ClaimStatus.REJECTED),

        # Administrative archive
        (ClaimStatus.LIQUIDATED, ClaimStatus.FINALIZED),
    ]

    # States the liquidation pipeline refuses to touch
    TERMINAL_STATES = (ClaimStatus.LIQUIDATED, ClaimStatus.REJECTED, ClaimStatus.FINALIZED)

    # States a pipeline run may start from
    RUNNABLE_STATES = (ClaimStatus.PENDING, ClaimStatus.VALIDATED, ClaimStatus.WITH_GLOSAS)

    @classmethod
    def can_transition(cls, from_status: ClaimStatus, to_status: ClaimStatus) -> bool:
        """Check if a transition is valid."""
        if from_status == to_status:
            return False

        return (from_status, to_status) in cls.VALID_TRANSITIONS

    @classmethod
    def get_valid_next_states(cls, current_status: ClaimStatus) -> List[ClaimStatus]:
        """Get all valid next states from current status."""
        valid_states = [
            to_status
            for from_status, to_status in cls.VALID_TRANSITIONS
            if from_status == current_status
        ]
        return valid_states

    @classmethod
    def is_terminal(cls, status: ClaimStatus) -> bool:
        """Terminal claims are never modified by the pipeline again."""
        return status in cls.TERMINAL_STATES

    @classmethod
    def transition(
        cls,
        db: Session,
        claim: Claim,
        target_status: ClaimStatus,
        reason: Optional[str] = None,
        commit: bool = True,
    ) -> Tuple[Claim, ClaimStateTransition]:
        """
        Perform a state transition and record it in the audit trail.

        Raises StateMachineError if transition is invalid. With commit=False the
        change is only flushed, so the caller decides when it becomes durable.
        """
        current_status = ClaimStatus(claim.status)

        if not cls.can_transition(current_status, target_status):
            raise StateMachineError(
                f"Cannot transition from {current_status.value} to {target_status.value}. "
                f"Valid next states: {[s.value for s in cls.get_valid_next_states(current_status)]}"
            )

        # Record transition
        transition = ClaimStateTransition(
            claim_id=claim.id,
            from_status=current_status.value,
            to_status=target_status.value,
            transition_reason=reason,
        )

        # Update claim status
        claim.status = target_status.value

        # Update timestamps based on status
        now = datetime.utcnow()
        if target_status == ClaimStatus.IN_PROCESS:
            claim.processing_started_at = now
        elif target_status == ClaimStatus.LIQUIDATED:
            claim.liquidated_at = now

        db.add(transition)
        if commit:
            db.commit()
            db.refresh(claim)
            db.refresh(transition)
        else:
            db.flush()

        return claim, transition

    @classmethod
    def claim_for_processing(
        cls, db: Session, claim: Claim, reason: Optional[str] = None
    ) -> Tuple[Claim, ClaimStateTransition]:
        """
        Move a claim into IN_PROCESS with a compare-and-swap on its status.

        Only one concurrent caller can win for a given claim; the others get
        StateMachineError. This is the per-claim exclusive section of a run.
        """
        current_status = ClaimStatus(claim.status)
        if current_status not in cls.RUNNABLE_STATES:
            raise StateMachineError(
                f"Cannot start liquidation from {current_status.value}. "
                f"Runnable states: {[s.value for s in cls.RUNNABLE_STATES]}"
            )

        now = datetime.utcnow()
        result = db.execute(
            update(Claim)
            .where(Claim.id == claim.id, Claim.status == current_status.value)
            .values(status=ClaimStatus.IN_PROCESS.value, processing_started_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            raise StateMachineError(
                f"Claim {claim.id} changed state concurrently; another run holds it"
            )

        transition = ClaimStateTransition(
            claim_id=claim.id,
            from_status=current_status.value,
            to_status=ClaimStatus.IN_PROCESS.value,
            transition_reason=reason,
        )
        db.add(transition)
        db.commit()
        db.refresh(claim)
        db.refresh(transition)

        return claim, transition
