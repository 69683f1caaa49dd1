"""
Admin endpoints for DM automations and the canned response library.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, status

from ..services import AutomationAdminService
from ..utils.auth import AuthenticatedUser
from .dependencies import get_automation_admin_service, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


# Automations
@router.get("/automations", response_model=Dict[str, Any])
async def list_automations(
    admin: AuthenticatedUser = Depends(require_admin),
    service: AutomationAdminService = Depends(get_automation_admin_service),
):
    """Automations with the number of messages each has sent."""
    return await service.list_automations()


@router.post("/automations", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def create_automation(
    data: Dict[str, Any] = Body(...),
    admin: AuthenticatedUser = Depends(require_admin),
    service: AutomationAdminService = Depends(get_automation_admin_service),
):
    return await service.create_automation(data, admin.id)


@router.get("/automations/{automation_id}", response_model=Dict[str, Any])
async def get_automation(
    automation_id: str,
    admin: AuthenticatedUser = Depends(require_admin),
    service: AutomationAdminService = Depends(get_automation_admin_service),
):
    return await service.get_automation(automation_id)


@router.patch("/automations/{automation_id}", response_model=Dict[str, Any])
async def update_automation(
    automation_id: str,
    data: Dict[str, Any] = Body(...),
    admin: AuthenticatedUser = Depends(require_admin),
    service: AutomationAdminService = Depends(get_automation_admin_service),
):
    return await service.update_automation(automation_id, data)


@router.delete("/automations/{automation_id}", response_model=Dict[str, Any])
async def delete_automation(
    automation_id: str,
    admin: AuthenticatedUser = Depends(require_admin),
    service: AutomationAdminService = Depends(get_automation_admin_service),
):
    return await service.delete_automation(automation_id)


# Canned responses
@router.get("/canned-responses", response_model=Dict[str, Any])
async def list_canned_responses(
    category: Optional[str] = None,
    admin: AuthenticatedUser = Depends(require_admin),
    service: AutomationAdminService = Depends(get_automation_admin_service),
):
    return await service.list_canned_responses(admin.id, category)


@router.post("/canned-responses", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def create_canned_response(
    data: Dict[str, Any] = Body(...),
    admin: AuthenticatedUser = Depends(require_admin),
    service: AutomationAdminService = Depends(get_automation_admin_service),
):
    return await service.create_canned_response(data, admin.id)


@router.post("/canned-responses/{response_id}/use", response_model=Dict[str, Any])
async def use_canned_response(
    response_id: str,
    admin: AuthenticatedUser = Depends(require_admin),
    service: AutomationAdminService = Depends(get_automation_admin_service),
):
    """Bump the usage counter when an admin inserts a response."""
    return await service.use_canned_response(response_id)
