"""
Test suite for admin automation management and canned responses.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from funnel_portal.schemas.database_models import DmAutomation, DmCannedResponse, TriggerType
from funnel_portal.services.automation_admin_service import AutomationAdminService
from funnel_portal.services.errors import NotFoundError, ValidationFailedError

AUTOMATION = DmAutomation(
    id="auto-1",
    name="Welcome",
    trigger_type=TriggerType.WELCOME,
    message_template="Hi {{first_name}}",
)


@pytest.fixture
def repos():
    automations = MagicMock()
    automations.create = AsyncMock(return_value=AUTOMATION)
    automations.get_by_id = AsyncMock(return_value=AUTOMATION)
    automations.update_fields = AsyncMock(return_value=AUTOMATION)
    automations.delete = AsyncMock(return_value=True)
    automations.list_with_sent_counts = AsyncMock(return_value=[])
    logs = MagicMock()
    logs.list_for_automation = AsyncMock(return_value=[{"id": "log-1"}])
    canned = MagicMock()
    canned.create = AsyncMock(return_value=DmCannedResponse(id="canned-1", title="Hi", content="Hello"))
    canned.increment_usage = AsyncMock(return_value=DmCannedResponse(
        id="canned-1", title="Hi", content="Hello", usage_count=1
    ))
    canned.list_visible = AsyncMock(return_value=[])
    return automations, logs, canned


@pytest.fixture
def service(repos):
    automations, logs, canned = repos
    return AutomationAdminService(automations=automations, logs=logs, canned=canned)


class TestCreateAutomation:
    """Test automation creation."""

    @pytest.mark.asyncio
    async def test_requires_fields(self, service):
        with pytest.raises(ValidationFailedError, match="required"):
            await service.create_automation({"name": "Welcome"}, "admin-1")

    @pytest.mark.asyncio
    async def test_invalid_trigger(self, service):
        with pytest.raises(ValidationFailedError, match="Invalid trigger_type"):
            await service.create_automation(
                {"name": "x", "trigger_type": "birthday", "message_template": "Hi"}, "admin-1"
            )

    @pytest.mark.asyncio
    async def test_negative_delay(self, service):
        with pytest.raises(ValidationFailedError, match="delay_minutes"):
            await service.create_automation(
                {"name": "x", "trigger_type": "welcome", "message_template": "Hi", "delay_minutes": -5},
                "admin-1",
            )

    @pytest.mark.asyncio
    async def test_creates_with_known_fields_only(self, service, repos):
        automations = repos[0]

        result = await service.create_automation(
            {"name": "Welcome", "trigger_type": "welcome", "message_template": "Hi", "id": "forged"},
            "admin-1",
        )

        created, created_by = automations.create.call_args.args
        assert created.trigger_type == TriggerType.WELCOME
        assert created_by == "admin-1"
        assert result["automation"]["id"] == "auto-1"


class TestUpdateAutomation:
    """Test partial updates."""

    @pytest.mark.asyncio
    async def test_invalid_trigger(self, service):
        with pytest.raises(ValidationFailedError):
            await service.update_automation("auto-1", {"trigger_type": "nope"})

    @pytest.mark.asyncio
    async def test_only_editable_fields(self, service, repos):
        automations = repos[0]

        await service.update_automation(
            "auto-1", {"is_enabled": True, "trigger_type": "purchase", "created_by": "someone"}
        )

        automation_id, values = automations.update_fields.call_args.args
        assert automation_id == "auto-1"
        assert values["is_enabled"] is True
        assert values["trigger_type"] == "purchase"
        assert "created_by" not in values
        assert "updated_at" in values

    @pytest.mark.asyncio
    async def test_missing(self, service, repos):
        repos[0].update_fields.return_value = None
        with pytest.raises(NotFoundError):
            await service.update_automation("auto-9", {"name": "x"})


class TestGetAndDelete:
    """Test lookups and deletes."""

    @pytest.mark.asyncio
    async def test_get_includes_logs(self, service, repos):
        result = await service.get_automation("auto-1")

        assert result["logs"] == [{"id": "log-1"}]
        repos[1].list_for_automation.assert_awaited_once_with("auto-1", limit=50)

    @pytest.mark.asyncio
    async def test_get_missing(self, service, repos):
        repos[0].get_by_id.return_value = None
        with pytest.raises(NotFoundError):
            await service.get_automation("auto-9")

    @pytest.mark.asyncio
    async def test_delete_missing(self, service, repos):
        repos[0].delete.return_value = False
        with pytest.raises(NotFoundError):
            await service.delete_automation("auto-9")


class TestCannedResponses:
    """Test the canned response library."""

    @pytest.mark.asyncio
    async def test_requires_title_and_content(self, service):
        with pytest.raises(ValidationFailedError):
            await service.create_canned_response({"title": "Hi"}, "admin-1")

    @pytest.mark.asyncio
    async def test_create(self, service, repos):
        result = await service.create_canned_response({"title": "Hi", "content": "Hello", "category": None}, "admin-1")

        created, created_by = repos[2].create.call_args.args
        assert created.category is None
        assert created_by == "admin-1"
        assert result["response"]["id"] == "canned-1"

    @pytest.mark.asyncio
    async def test_use_increments(self, service):
        result = await service.use_canned_response("canned-1")
        assert result["response"]["usage_count"] == 1

    @pytest.mark.asyncio
    async def test_use_missing(self, service, repos):
        repos[2].increment_usage.return_value = None
        with pytest.raises(NotFoundError):
            await service.use_canned_response("canned-9")

    @pytest.mark.asyncio
    async def test_blank_category_lists_all(self, service, repos):
        await service.list_canned_responses("admin-1", "")
        repos[2].list_visible.assert_awaited_once_with("admin-1", None)
