"""
Scheduled job endpoint driving the DM automation engine.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status

from ..services import AutomationService
from ..utils.auth import verify_cron_secret
from .dependencies import get_automation_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["Cron"])


@router.api_route(
    "/process-automations",
    methods=["GET", "POST"],
    response_model=Dict[str, Any],
    dependencies=[Depends(verify_cron_secret)],
)
async def process_automations(automations: AutomationService = Depends(get_automation_engine)):
    """
    Sweep lifecycle triggers, then deliver due automation messages.

    Called by the platform scheduler; guarded by the cron secret in production.
    A failed lifecycle sweep is reported but never stops the pending queue
    from draining.
    """
    errors: List[str] = []

    triggered = 0
    try:
        triggered = await automations.evaluate_lifecycle_triggers()
    except Exception as e:
        logger.error(f"Lifecycle trigger evaluation failed: {e}")
        errors.append(f"lifecycle: {e}")

    try:
        processed = await automations.process_pending_automations()
    except Exception as e:
        logger.error(f"Automation cron failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process automations"
        )

    return {
        "success": True,
        "processed": processed,
        "triggered": triggered,
        "errors": errors,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
