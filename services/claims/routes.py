"""FastAPI routes for claims management and liquidation."""

from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func
from sqlalchemy.orm import Session
from typing import List, Optional, Union
from common.db import get_db
from common.enums import ClaimStatus, EventType
from services.claims import models, schemas, state_machine
from services.liquidation.errors import (
    ClaimConflictError,
    ClaimNotFoundError,
    LiquidationCancelled,
    ReportGenerationError,
)
from services.liquidation.orchestrator import LiquidationOrchestrator, build_orchestrator
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/claims", tags=["claims"])


def get_orchestrator(db: Session = Depends(get_db)) -> LiquidationOrchestrator:
    """Dependency that wires the liquidation orchestrator to the request session."""
    return build_orchestrator(db)


def get_claim_or_404(db: Session, claim_id: int) -> models.Claim:
    claim = db.query(models.Claim).filter(models.Claim.id == claim_id).first()
    if not claim:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Claim not found")
    return claim


# api router for creating a claim
@router.post("/", response_model=schemas.ClaimResponse, status_code=status.HTTP_201_CREATED)
def create_claim(claim: schemas.ClaimCreate, db: Session = Depends(get_db)):
    """Create a new claim in PENDING state."""
    if not models.is_valid_claim_number(claim.claim_number):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Malformed claim number: {claim.claim_number}",
        )

    # Check if claim number already exists
    existing = db.query(models.Claim).filter(models.Claim.claim_number == claim.claim_number).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Claim with number {claim.claim_number} already exists",
        )

    declared_total = claim.declared_total
    if declared_total is None and claim.billed_value is not None:
        declared_total = claim.billed_value * claim.quantity

    db_claim = models.Claim(
        claim_number=claim.claim_number,
        provider_tax_id=claim.provider_tax_id,
        provider_name=claim.provider_name,
        payer_name=claim.payer_name,
        invoice_number=claim.invoice_number,
        invoice_date=claim.invoice_date,
        billed_value=claim.billed_value,
        quantity=claim.quantity,
        procedure_code=claim.procedure_code,
        procedure_name=claim.procedure_name,
        diagnosis_code=claim.diagnosis_code,
        care_type=claim.care_type.value if claim.care_type else None,
        patient_info=claim.patient_info,
        authorization_info=claim.authorization_info,
        copayment_info=claim.copayment_info,
        status=ClaimStatus.PENDING.value,
    )
    # assigned separately so the value bucket is derived
    db_claim.declared_total = Decimal(str(declared_total)) if declared_total is not None else None

    db.add(db_claim)
    db.commit()
    db.refresh(db_claim)

    # Create initial state transition record
    transition = models.ClaimStateTransition(
        claim_id=db_claim.id,
        from_status=None,
        to_status=ClaimStatus.PENDING.value,
        transition_reason="Initial claim creation",
    )
    event = models.ClaimEvent(
        claim_id=db_claim.id,
        event_type=EventType.CLAIM_CREATED.value,
        event_data={"claim_number": db_claim.claim_number, "value_bucket": db_claim.value_bucket},
        description=f"Claim {db_claim.claim_number} filed",
    )
    db.add(transition)
    db.add(event)
    db.commit()
    db.refresh(db_claim)

    return db_claim


@router.get("/", response_model=List[schemas.ClaimResponse])
def list_claims(
    skip: int = 0,
    limit: int = 100,
    status_filter: Optional[ClaimStatus] = None,
    db: Session = Depends(get_db),
):
    """List claims with optional status filter."""
    query = db.query(models.Claim)

    if status_filter:
        query = query.filter(models.Claim.status == status_filter.value)

    claims = query.order_by(models.Claim.id).offset(skip).limit(limit).all()
    return claims


@router.get("/statistics", response_model=schemas.ClaimStatisticsResponse)
def get_claim_statistics(db: Session = Depends(get_db)):
    """Claim counts per state and liquidation totals."""
    counts = dict(
        db.query(models.Claim.status, func.count(models.Claim.id)).group_by(models.Claim.status).all()
    )
    by_status = {s.value: counts.get(s.value, 0) for s in ClaimStatus}

    total_payable = 0.0
    total_glosa = 0.0
    summaries = (
        db.query(models.Claim.liquidation_summary)
        .filter(models.Claim.status.in_([
            ClaimStatus.VALIDATED.value,
            ClaimStatus.WITH_GLOSAS.value,
            ClaimStatus.LIQUIDATED.value,
            ClaimStatus.FINALIZED.value,
        ]))
        .all()
    )
    for (summary,) in summaries:
        if summary:
            total_payable += float(summary.get("payable") or 0)
            total_glosa += float(summary.get("total_glosa") or 0)

    requiring_review = db.query(models.Claim).filter(models.Claim.requires_review.is_(True)).count()

    return schemas.ClaimStatisticsResponse(
        total_claims=sum(by_status.values()),
        by_status=by_status,
        total_payable=total_payable,
        total_glosa=total_glosa,
        requiring_review=requiring_review,
    )


@router.get("/{claim_id}", response_model=schemas.ClaimDetailResponse)
def get_claim(claim_id: int, db: Session = Depends(get_db)):
    """Get a single claim with its latest pipeline results."""
    return get_claim_or_404(db, claim_id)


# get transition history for a claim
@router.get("/{claim_id}/transitions", response_model=List[schemas.ClaimStateTransitionResponse])
def get_claim_transitions(claim_id: int, db: Session = Depends(get_db)):
    """Get state transition history for a claim."""
    get_claim_or_404(db, claim_id)

    transitions = (
        db.query(models.ClaimStateTransition)
        .filter(models.ClaimStateTransition.claim_id == claim_id)
        .order_by(models.ClaimStateTransition.created_at, models.ClaimStateTransition.id)
        .all()
    )
    return transitions


@router.get("/{claim_id}/next-states", response_model=List[str])
def get_valid_next_states(claim_id: int, db: Session = Depends(get_db)):
    """Get valid next states for a claim."""
    claim = get_claim_or_404(db, claim_id)

    current_status = ClaimStatus(claim.status)
    next_states = state_machine.ClaimStateMachine.get_valid_next_states(current_status)
    return [state.value for state in next_states]


@router.get("/{claim_id}/events", response_model=List[schemas.ClaimEventResponse])
def get_claim_events(claim_id: int, db: Session = Depends(get_db)):
    """Get all events for a claim (immutable event log)."""
    get_claim_or_404(db, claim_id)

    events = (
        db.query(models.ClaimEvent)
        .filter(models.ClaimEvent.claim_id == claim_id)
        .order_by(models.ClaimEvent.created_at, models.ClaimEvent.id)
        .all()
    )
    return events


@router.post(
    "/{claim_id}/documents",
    response_model=schemas.DocumentResponse,
    status_code=status.HTTP_201_CREATED,
)
def attach_document(claim_id: int, document: schemas.DocumentCreate, db: Session = Depends(get_db)):
    """Attach a document (and any upstream extraction results) to a claim."""
    claim = get_claim_or_404(db, claim_id)
    if state_machine.ClaimStateMachine.is_terminal(ClaimStatus(claim.status)):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Claim is {claim.status}; documents can no longer be attached",
        )

    db_document = models.ClaimDocument(
        claim_id=claim.id,
        kind=document.kind.value,
        filename=document.filename,
        mime_type=document.mime_type,
        size_bytes=document.size_bytes,
        extraction_payload=document.extraction_payload,
    )
    db.add(db_document)
    db.add(
        models.ClaimEvent(
            claim_id=claim.id,
            event_type=EventType.DOCUMENT_ATTACHED.value,
            event_data={"kind": document.kind.value, "filename": document.filename},
            description=f"Document attached: {document.filename}",
        )
    )
    db.commit()
    db.refresh(db_document)
    return db_document


@router.post(
    "/{claim_id}/liquidate",
    response_model=Union[schemas.LiquidationResponse, schemas.LiquidationQueuedResponse],
)
def liquidate_claim(
    claim_id: int,
    run_async: bool = Query(False, alias="async"),
    db: Session = Depends(get_db),
    orchestrator: LiquidationOrchestrator = Depends(get_orchestrator),
):
    """Run the liquidation pipeline now, or queue it on the worker with ?async=true."""
    claim = get_claim_or_404(db, claim_id)

    if run_async:
        from services.claims.tasks import run_liquidation_task

        task = run_liquidation_task.delay(claim.id)
        logger.info(f"Queued liquidation for claim {claim.id} as task {task.id}")
        return schemas.LiquidationQueuedResponse(claim_id=claim.id, task_id=str(task.id))

    try:
        result = orchestrator.run_liquidation(claim_id)
    except ClaimNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (ClaimConflictError, LiquidationCancelled) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return schemas.LiquidationResponse(**result.as_dict())


@router.post("/{claim_id}/finalize", response_model=schemas.ClaimResponse)
def finalize_claim(
    claim_id: int,
    orchestrator: LiquidationOrchestrator = Depends(get_orchestrator),
):
    """Freeze totals and move a validated claim to LIQUIDATED."""
    try:
        return orchestrator.finalize_liquidation(claim_id)
    except ClaimNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ClaimConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ReportGenerationError as e:
        logger.warning(f"Finalize blocked for claim {claim_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Report generation failed: {e}")
    except state_machine.StateMachineError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/{claim_id}/archive", response_model=schemas.ClaimResponse)
def archive_claim(claim_id: int, db: Session = Depends(get_db)):
    """Administrative archive of a liquidated claim."""
    claim = get_claim_or_404(db, claim_id)

    try:
        updated_claim, _ = state_machine.ClaimStateMachine.transition(
            db=db, claim=claim, target_status=ClaimStatus.FINALIZED, reason="Archived"
        )
        return updated_claim
    except state_machine.StateMachineError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.delete("/{claim_id}", response_model=schemas.DeletionResponse)
def delete_claim(
    claim_id: int,
    orchestrator: LiquidationOrchestrator = Depends(get_orchestrator),
):
    """Delete a claim, or mark it for deletion if a liquidation run holds it."""
    try:
        deleted = orchestrator.request_deletion(claim_id)
    except ClaimNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return schemas.DeletionResponse(claim_id=claim_id, deleted=deleted, marked_for_deletion=not deleted)
