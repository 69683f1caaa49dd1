"""
Automation repositories: DM automations, their send log and canned responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..schemas.database_models import (
    AutomationLogStatus,
    DmAutomation,
    DmAutomationCreate,
    DmAutomationLog,
    DmCannedResponse,
    DmCannedResponseCreate,
    TriggerType,
)
from ..utils.database import SupabaseClient
from .base_repository import BaseRepository


class AutomationRepository(BaseRepository[DmAutomation]):
    """Repository for the ``dm_automations`` table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(DmAutomation, "dm_automations", db_client)

    async def list_enabled_for_trigger(self, trigger: TriggerType) -> List[DmAutomation]:
        query = """
            SELECT * FROM dm_automations
            WHERE is_enabled = TRUE AND trigger_type = $1
            ORDER BY created_at
        """
        rows = await self._execute_query(query, trigger.value, fetch_all=True)
        return self._rows_to_models(rows)

    async def list_with_sent_counts(self) -> List[Dict[str, Any]]:
        query = """
            SELECT a.*,
                   (SELECT COUNT(*) FROM dm_automation_logs l
                     WHERE l.automation_id = a.id AND l.status = 'sent') AS sent_count
            FROM dm_automations a
            ORDER BY a.created_at DESC
        """
        rows = await self._execute_query(query, fetch_all=True)
        results = []
        for row in rows or []:
            automation = self._row_to_model(row).model_dump(mode="json")
            automation["sent_count"] = int(row["sent_count"])
            results.append(automation)
        return results

    async def create(self, automation: DmAutomationCreate, created_by: str) -> DmAutomation:
        query = """
            INSERT INTO dm_automations (
                name, description, trigger_type, trigger_config, message_template,
                sender_id, is_enabled, delay_minutes, created_by
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
        """
        row = await self._execute_query(
            query,
            automation.name,
            automation.description,
            automation.trigger_type.value,
            automation.trigger_config,
            automation.message_template,
            automation.sender_id,
            automation.is_enabled,
            automation.delay_minutes,
            created_by,
            fetch_one=True,
        )
        self._logger.info(f"Created automation '{automation.name}' ({automation.trigger_type.value})")
        return self._row_to_model(row)


class AutomationLogRepository(BaseRepository[DmAutomationLog]):
    """Repository for the ``dm_automation_logs`` queue/audit table."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(DmAutomationLog, "dm_automation_logs", db_client)

    async def exists_for_context(self, automation_id: str, recipient_id: str, context_key: str) -> bool:
        """Whether this automation already queued or sent for the context key."""
        query = """
            SELECT 1 FROM dm_automation_logs
            WHERE automation_id = $1 AND recipient_id = $2
              AND status IN ('sent', 'pending')
              AND trigger_data->>'context_key' = $3
            LIMIT 1
        """
        row = await self._execute_query(query, automation_id, recipient_id, context_key, fetch_one=True)
        return row is not None

    async def create_pending(
        self,
        automation_id: str,
        recipient_id: str,
        trigger_data: Dict[str, Any],
        scheduled_for: datetime,
    ) -> DmAutomationLog:
        query = """
            INSERT INTO dm_automation_logs (automation_id, recipient_id, trigger_data, status, scheduled_for)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
        """
        row = await self._execute_query(
            query,
            automation_id,
            recipient_id,
            trigger_data,
            AutomationLogStatus.PENDING.value,
            scheduled_for,
            fetch_one=True,
        )
        return self._row_to_model(row)

    async def mark_sent(
        self, log_id: str, conversation_id: Optional[str], message_id: Optional[str], sent_at: datetime
    ) -> None:
        query = """
            UPDATE dm_automation_logs
            SET status = 'sent', conversation_id = $2, message_id = $3, sent_at = $4, error_message = NULL
            WHERE id = $1
        """
        await self._execute_query(query, log_id, conversation_id, message_id, sent_at, fetch_all=False)

    async def mark_failed(self, log_id: str, error_message: str) -> None:
        query = "UPDATE dm_automation_logs SET status = 'failed', error_message = $2 WHERE id = $1"
        await self._execute_query(query, log_id, error_message, fetch_all=False)

    async def list_due(
        self, now: datetime, limit: int
    ) -> List[Tuple[DmAutomationLog, Optional[DmAutomation]]]:
        """
        Pending logs whose scheduled time has passed, oldest first.

        Returns:
            ``(log, automation)`` pairs; automation is None when it was deleted
        """
        query = """
            SELECT l.*, to_jsonb(a.*) AS automation
            FROM dm_automation_logs l
            LEFT JOIN dm_automations a ON a.id = l.automation_id
            WHERE l.status = 'pending' AND l.scheduled_for <= $1
            ORDER BY l.scheduled_for
            LIMIT $2
        """
        rows = await self._execute_query(query, now, limit, fetch_all=True)
        due = []
        for row in rows or []:
            automation = row["automation"]
            due.append((
                self._row_to_model(row),
                DmAutomation.model_validate(automation) if automation else None,
            ))
        return due

    async def list_for_automation(self, automation_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        query = """
            SELECT l.*, pr.email AS recipient_email, pr.full_name AS recipient_full_name
            FROM dm_automation_logs l
            LEFT JOIN profiles pr ON pr.id = l.recipient_id
            WHERE l.automation_id = $1
            ORDER BY l.created_at DESC
            LIMIT $2
        """
        rows = await self._execute_query(query, automation_id, limit, fetch_all=True)
        results = []
        for row in rows or []:
            log = self._row_to_model(row).model_dump(mode="json")
            log["recipient"] = {
                "id": log["recipient_id"],
                "email": row["recipient_email"],
                "full_name": row["recipient_full_name"],
            }
            results.append(log)
        return results


class CannedResponseRepository(BaseRepository[DmCannedResponse]):
    """Repository for ``dm_canned_responses``."""

    def __init__(self, db_client: Optional[SupabaseClient] = None):
        super().__init__(DmCannedResponse, "dm_canned_responses", db_client)

    async def list_visible(self, user_id: str, category: Optional[str] = None) -> List[DmCannedResponse]:
        """Shared responses plus the caller's own, most used first."""
        query = """
            SELECT * FROM dm_canned_responses
            WHERE (is_shared = TRUE OR created_by = $1)
              AND ($2::text IS NULL OR category = $2)
            ORDER BY usage_count DESC, created_at DESC
        """
        rows = await self._execute_query(query, user_id, category, fetch_all=True)
        return self._rows_to_models(rows)

    async def create(self, response: DmCannedResponseCreate, created_by: str) -> DmCannedResponse:
        query = """
            INSERT INTO dm_canned_responses (title, content, shortcut, category, is_shared, created_by)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING *
        """
        row = await self._execute_query(
            query,
            response.title,
            response.content,
            response.shortcut,
            response.category,
            response.is_shared,
            created_by,
            fetch_one=True,
        )
        return self._row_to_model(row)

    async def increment_usage(self, response_id: str) -> Optional[DmCannedResponse]:
        query = "UPDATE dm_canned_responses SET usage_count = usage_count + 1 WHERE id = $1 RETURNING *"
        row = await self._execute_query(query, response_id, fetch_one=True)
        return self._row_to_model(row)
