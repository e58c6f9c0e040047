"""Celery tasks for async claim liquidation."""

from common.celery_app import celery_app
from common.db import SessionLocal
from services.liquidation.errors import ClaimConflictError, ClaimNotFoundError, LiquidationCancelled
from services.liquidation.orchestrator import build_orchestrator
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="run_liquidation")
def run_liquidation_task(claim_id: int):
    """
    Async task that runs the liquidation pipeline for a claim.

    The pipeline itself moves the claim PENDING -> IN_PROCESS -> result state.
    """
    db = SessionLocal()
    try:
        orchestrator = build_orchestrator(db)
        result = orchestrator.run_liquidation(claim_id)
        logger.info(f"Claim {claim_id} liquidation finished as {result.status.value}")
        return {"task_status": "success", **result.as_dict()}

    except ClaimNotFoundError:
        logger.error(f"Claim {claim_id} not found")
        return {"task_status": "error", "message": "Claim not found"}
    except ClaimConflictError as e:
        logger.warning(f"Claim {claim_id} skipped: {e}")
        return {"task_status": "skipped", "message": str(e)}
    except LiquidationCancelled as e:
        logger.warning(f"Claim {claim_id} liquidation cancelled: {e}")
        return {"task_status": "cancelled", "message": str(e)}
    except Exception as e:
        logger.error(f"Error liquidating claim {claim_id}: {str(e)}", exc_info=True)
        return {"task_status": "error", "message": str(e)}
    finally:
        db.close()
