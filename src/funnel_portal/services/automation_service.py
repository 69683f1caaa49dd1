"""
DM Automation Engine.

Rule-based direct messages fired by member lifecycle events. Each enabled
automation matching a trigger is evaluated in order:

1. product filters from ``trigger_config`` are applied
2. a context key deduplicates repeat firings per member
3. a ``pending`` log row is written with its scheduled send time
4. zero-delay automations are sent immediately; delayed ones are drained
   later by the cron job through ``process_pending_automations``

Messages are rendered from templates with ``{{variable}}`` placeholders.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from pydantic import BaseModel

from ..config import get_config
from ..repositories.automation_repository import AutomationLogRepository, AutomationRepository
from ..repositories.profile_repository import ProfileRepository
from ..schemas.database_models import DmAutomation, Profile, TriggerType
from ..utils.job_logger import track_job_execution
from .messaging_service import MessagingService

logger = logging.getLogger(__name__)

COURSE_TRIGGERS = {
    TriggerType.COURSE_STARTED,
    TriggerType.COURSE_PROGRESS_25,
    TriggerType.COURSE_PROGRESS_50,
    TriggerType.COURSE_PROGRESS_75,
    TriggerType.COURSE_COMPLETED,
}

INACTIVITY_TRIGGERS: List[Tuple[int, TriggerType]] = [
    (7, TriggerType.INACTIVITY_7D),
    (14, TriggerType.INACTIVITY_14D),
    (30, TriggerType.INACTIVITY_30D),
]

ANNIVERSARY_TRIGGERS: List[Tuple[int, TriggerType]] = [
    (30, TriggerType.ANNIVERSARY_30D),
    (90, TriggerType.ANNIVERSARY_90D),
    (365, TriggerType.ANNIVERSARY_1Y),
]

# Anniversaries missed by a skipped cron run are still sent within this window
ANNIVERSARY_GRACE_DAYS = 7

NO_ADMIN_ERROR = "No admin found to send message"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TriggerContext(BaseModel):
    """Event data carried from the trigger to the rendered message."""

    member_id: str
    member_name: Optional[str] = None
    member_first_name: Optional[str] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    progress_percent: Optional[int] = None
    days_since_join: Optional[int] = None
    context_key: Optional[str] = None


class MemberDetails(BaseModel):
    name: str
    first_name: str
    days_since_join: int


class SendResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    error: Optional[str] = None


def process_template(template: str, context: TriggerContext) -> str:
    """
    Substitute ``{{variable}}`` placeholders.

    A placeholder without a value is left untouched. The first name falls
    back to the first word of the member name.
    """
    first_name = context.member_first_name
    if not first_name and context.member_name:
        first_name = context.member_name.split(" ")[0]

    replacements = {
        "{{member_name}}": context.member_name,
        "{{member_first_name}}": first_name,
        "{{product_name}}": context.product_name,
        "{{progress_percent}}": context.progress_percent,
        "{{days_since_join}}": context.days_since_join,
    }

    result = template
    for placeholder, value in replacements.items():
        if value is None or value == "":
            continue
        result = result.replace(placeholder, str(value))
    return result


def build_member_details(profile: Profile, now: Optional[datetime] = None) -> MemberDetails:
    now = now or utc_now()
    created_at = profile.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)

    full_name_first = profile.full_name.split(" ")[0] if profile.full_name else None
    return MemberDetails(
        name=profile.full_name or profile.first_name or "there",
        first_name=profile.first_name or full_name_first or "there",
        days_since_join=max(0, (now - created_at).days),
    )


def progress_trigger_for(percent: int) -> Optional[TriggerType]:
    """Highest progress milestone reached, if any."""
    if percent >= 75:
        return TriggerType.COURSE_PROGRESS_75
    if percent >= 50:
        return TriggerType.COURSE_PROGRESS_50
    if percent >= 25:
        return TriggerType.COURSE_PROGRESS_25
    return None


def matches_product_filter(automation: DmAutomation, context: TriggerContext) -> bool:
    """Product-scoped automations only fire for their configured product."""
    configured = automation.trigger_config.get("product_id")
    if not configured:
        return True
    if automation.trigger_type == TriggerType.PURCHASE_SPECIFIC or automation.trigger_type in COURSE_TRIGGERS:
        return str(configured) == (context.product_id or "")
    return True


class AutomationService:
    """Evaluates lifecycle triggers and delivers automated DMs."""

    def __init__(
        self,
        automations: Optional[AutomationRepository] = None,
        logs: Optional[AutomationLogRepository] = None,
        profiles: Optional[ProfileRepository] = None,
        messaging: Optional[MessagingService] = None,
    ):
        self.automations = automations or AutomationRepository()
        self.logs = logs or AutomationLogRepository()
        self.profiles = profiles or ProfileRepository()
        self.messaging = messaging or MessagingService(profiles=self.profiles)

    async def trigger_automation(self, trigger: TriggerType, context: TriggerContext) -> int:
        """
        Evaluate every enabled automation for a trigger.

        Returns:
            Number of automation logs created (sent or scheduled)
        """
        logger.info(f"Triggering {trigger.value} for member {context.member_id}")

        automations = await self.automations.list_enabled_for_trigger(trigger)
        if not automations:
            logger.debug(f"No enabled automations for trigger: {trigger.value}")
            return 0

        member = await self.profiles.get_by_id(context.member_id)
        if not member:
            logger.error(f"Automation member not found: {context.member_id}")
            return 0

        now = utc_now()
        details = build_member_details(member, now)
        full_context = context.model_copy(update={
            "member_name": details.name,
            "member_first_name": details.first_name,
            "days_since_join": details.days_since_join,
        })
        context_key = context.context_key or f"{trigger.value}_{context.product_id or 'general'}"

        created = 0
        for automation in automations:
            if not matches_product_filter(automation, context):
                continue

            if await self.logs.exists_for_context(automation.id, context.member_id, context_key):
                logger.info(f"Already triggered {automation.name} for member {context.member_id}")
                continue

            trigger_data = full_context.model_dump(mode="json", exclude_none=True)
            trigger_data["context_key"] = context_key
            scheduled_for = now + timedelta(minutes=automation.delay_minutes)

            log = await self.logs.create_pending(automation.id, context.member_id, trigger_data, scheduled_for)
            created += 1

            if automation.delay_minutes > 0:
                logger.info(f"Scheduled {automation.name} for member {context.member_id} at {scheduled_for.isoformat()}")
                continue

            result = await self.send_automated_message(automation, full_context)
            await self._record_result(log.id, result)
            logger.info(
                f"{'Sent' if result.success else 'Failed'} {automation.name} to member {context.member_id}"
            )

        return created

    async def send_automated_message(self, automation: DmAutomation, context: TriggerContext) -> SendResult:
        """Render the automation template and deliver it to the member."""
        sender_id = automation.sender_id
        if not sender_id:
            admin = await self.profiles.get_first_admin()
            if not admin:
                return SendResult(success=False, error=NO_ADMIN_ERROR)
            sender_id = admin.id

        content = process_template(automation.message_template, context)
        try:
            conversation, message = await self.messaging.send_system_message(
                sender_id, context.member_id, content
            )
        except Exception as e:
            logger.error(f"Failed to deliver automation {automation.id}: {e}")
            return SendResult(success=False, error=str(e))

        return SendResult(success=True, message_id=message.id, conversation_id=conversation.id)

    async def _record_result(self, log_id: str, result: SendResult) -> None:
        if result.success:
            await self.logs.mark_sent(log_id, result.conversation_id, result.message_id, utc_now())
        else:
            await self.logs.mark_failed(log_id, result.error or "Unknown error")

    async def process_pending_automations(self, limit: Optional[int] = None) -> int:
        """
        Send scheduled automation messages that are due.

        Returns:
            Number of logs processed
        """
        limit = limit or get_config().cron.batch_size

        async with track_job_execution("process_pending_automations") as job:
            due = await self.logs.list_due(utc_now(), limit)
            processed = 0

            for log, automation in due:
                if automation is None:
                    await self.logs.mark_failed(log.id, "Automation no longer exists")
                    job.increment("failed")
                elif not automation.is_enabled:
                    await self.logs.mark_failed(log.id, "Automation disabled before send")
                    job.increment("failed")
                else:
                    context = TriggerContext.model_validate(log.trigger_data | {"member_id": log.recipient_id})
                    result = await self.send_automated_message(automation, context)
                    await self._record_result(log.id, result)
                    job.increment("sent" if result.success else "failed")
                processed += 1

            job.increment("processed", processed)
            return processed

    async def evaluate_lifecycle_triggers(self, now: Optional[datetime] = None) -> int:
        """
        Fire inactivity and anniversary automations.

        Inactivity keys include the date activity stopped so a member who
        returns and lapses again is messaged again. Anniversaries fire once.

        Returns:
            Number of automation logs created
        """
        now = now or utc_now()
        created = 0

        async with track_job_execution("evaluate_lifecycle_triggers") as job:
            for days, trigger in INACTIVITY_TRIGGERS:
                if not await self.automations.list_enabled_for_trigger(trigger):
                    continue
                for member in await self.profiles.list_inactive_since(now - timedelta(days=days)):
                    last_seen = member.last_active_at or member.created_at
                    key = f"{trigger.value}_{last_seen.date().isoformat()}"
                    created += await self.trigger_automation(
                        trigger, TriggerContext(member_id=member.id, context_key=key)
                    )

            for days, trigger in ANNIVERSARY_TRIGGERS:
                if not await self.automations.list_enabled_for_trigger(trigger):
                    continue
                window_end = now - timedelta(days=days)
                window_start = window_end - timedelta(days=ANNIVERSARY_GRACE_DAYS)
                for member in await self.profiles.list_joined_between(window_start, window_end):
                    created += await self.trigger_automation(
                        trigger, TriggerContext(member_id=member.id, context_key=trigger.value)
                    )

            job.increment("created", created)
        return created

    # Convenience triggers
    async def trigger_welcome(self, member_id: str) -> int:
        return await self.trigger_automation(TriggerType.WELCOME, TriggerContext(member_id=member_id))

    async def trigger_purchase(self, member_id: str, product_id: str, product_name: str) -> int:
        """Fire both the generic and the product-specific purchase automations."""
        context = TriggerContext(
            member_id=member_id,
            product_id=product_id,
            product_name=product_name,
            context_key=f"purchase_{product_id}",
        )
        created = await self.trigger_automation(TriggerType.PURCHASE, context)
        created += await self.trigger_automation(TriggerType.PURCHASE_SPECIFIC, context)
        return created

    async def trigger_course_started(self, member_id: str, product_id: str, product_name: str) -> int:
        return await self.trigger_automation(
            TriggerType.COURSE_STARTED,
            TriggerContext(
                member_id=member_id,
                product_id=product_id,
                product_name=product_name,
                context_key=f"course_started_{product_id}",
            ),
        )

    async def trigger_course_progress(
        self, member_id: str, product_id: str, product_name: str, percent: int
    ) -> int:
        trigger = progress_trigger_for(percent)
        if trigger is None:
            return 0
        return await self.trigger_automation(
            trigger,
            TriggerContext(
                member_id=member_id,
                product_id=product_id,
                product_name=product_name,
                progress_percent=percent,
                context_key=f"{trigger.value}_{product_id}",
            ),
        )

    async def trigger_course_completed(self, member_id: str, product_id: str, product_name: str) -> int:
        return await self.trigger_automation(
            TriggerType.COURSE_COMPLETED,
            TriggerContext(
                member_id=member_id,
                product_id=product_id,
                product_name=product_name,
                progress_percent=100,
                context_key=f"course_completed_{product_id}",
            ),
        )

    async def trigger_first_community_post(self, member_id: str) -> int:
        return await self.trigger_automation(
            TriggerType.FIRST_COMMUNITY_POST,
            TriggerContext(member_id=member_id, context_key="first_community_post"),
        )


# Global automation service instance
automation_service: Optional[AutomationService] = None


def get_automation_service() -> AutomationService:
    global automation_service
    if automation_service is None:
        automation_service = AutomationService()
    return automation_service
