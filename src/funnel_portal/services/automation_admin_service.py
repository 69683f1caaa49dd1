"""
Admin management of DM automations and canned responses.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..repositories.automation_repository import (
    AutomationLogRepository,
    AutomationRepository,
    CannedResponseRepository,
)
from ..schemas.database_models import (
    DmAutomationCreate,
    DmAutomationUpdate,
    DmCannedResponseCreate,
    TriggerType,
)
from .errors import NotFoundError, ValidationFailedError

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "name",
    "description",
    "trigger_type",
    "trigger_config",
    "message_template",
    "sender_id",
    "is_enabled",
    "delay_minutes",
)

VALID_TRIGGERS = {trigger.value for trigger in TriggerType}


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return "Invalid request"
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else first.get("msg", "Invalid request")


class AutomationAdminService:
    """CRUD for automations plus the canned response library."""

    def __init__(
        self,
        automations: Optional[AutomationRepository] = None,
        logs: Optional[AutomationLogRepository] = None,
        canned: Optional[CannedResponseRepository] = None,
    ):
        self.automations = automations or AutomationRepository()
        self.logs = logs or AutomationLogRepository()
        self.canned = canned or CannedResponseRepository()

    async def list_automations(self) -> Dict[str, Any]:
        return {"automations": await self.automations.list_with_sent_counts()}

    async def create_automation(self, data: Dict[str, Any], created_by: str) -> Dict[str, Any]:
        if not data.get("name") or not data.get("trigger_type") or not data.get("message_template"):
            raise ValidationFailedError("name, trigger_type, and message_template are required")
        if data["trigger_type"] not in VALID_TRIGGERS:
            raise ValidationFailedError(f"Invalid trigger_type: {data['trigger_type']}")

        try:
            automation = DmAutomationCreate.model_validate(
                {key: value for key, value in data.items() if key in UPDATABLE_FIELDS and value is not None}
            )
        except ValidationError as e:
            raise ValidationFailedError(_first_error(e))

        created = await self.automations.create(automation, created_by)
        return {"automation": created.model_dump(mode="json")}

    async def get_automation(self, automation_id: str) -> Dict[str, Any]:
        automation = await self.automations.get_by_id(automation_id)
        if not automation:
            raise NotFoundError("Automation not found")
        logs = await self.logs.list_for_automation(automation_id, limit=50)
        return {"automation": automation.model_dump(mode="json"), "logs": logs}

    async def update_automation(self, automation_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial update limited to the editable columns."""
        if "trigger_type" in data and data["trigger_type"] not in VALID_TRIGGERS:
            raise ValidationFailedError(f"Invalid trigger_type: {data['trigger_type']}")
        try:
            update = DmAutomationUpdate.model_validate(
                {key: value for key, value in data.items() if key in UPDATABLE_FIELDS}
            )
        except ValidationError as e:
            raise ValidationFailedError(_first_error(e))

        values = update.model_dump(exclude_unset=True)
        if "trigger_type" in values and values["trigger_type"] is not None:
            values["trigger_type"] = values["trigger_type"].value
        values["updated_at"] = datetime.now(timezone.utc)

        updated = await self.automations.update_fields(automation_id, values)
        if not updated:
            raise NotFoundError("Automation not found")
        logger.info(f"Updated automation {automation_id}: {sorted(values)}")
        return {"automation": updated.model_dump(mode="json")}

    async def delete_automation(self, automation_id: str) -> Dict[str, Any]:
        if not await self.automations.delete(automation_id):
            raise NotFoundError("Automation not found")
        logger.info(f"Deleted automation {automation_id}")
        return {"success": True}

    # Canned responses
    async def list_canned_responses(self, user_id: str, category: Optional[str] = None) -> Dict[str, Any]:
        responses = await self.canned.list_visible(user_id, category or None)
        return {"responses": [response.model_dump(mode="json") for response in responses]}

    async def create_canned_response(self, data: Dict[str, Any], created_by: str) -> Dict[str, Any]:
        if not data.get("title") or not data.get("content"):
            raise ValidationFailedError("title and content are required")
        try:
            response = DmCannedResponseCreate.model_validate(
                {key: value for key, value in data.items() if value is not None}
            )
        except ValidationError as e:
            raise ValidationFailedError(_first_error(e))
        created = await self.canned.create(response, created_by)
        return {"response": created.model_dump(mode="json")}

    async def use_canned_response(self, response_id: str) -> Dict[str, Any]:
        updated = await self.canned.increment_usage(response_id)
        if not updated:
            raise NotFoundError("Canned response not found")
        return {"response": updated.model_dump(mode="json")}
