"""
Tests for the deadline rule repository.

Run with: pytest tests/test_deadline_rules.py -v
"""

from datetime import date

import pytest
from sqlalchemy import select, func

from database.deadline_models import (
    DeadlineRuleDB, DeadlineAuditLogDB, AuditEntityType, AuditAction, TaxType, TriggerType, utc_now,
)
from services.audit import AuditLogRepository
from services.deadline_rules import RuleRepository, DeadlineRuleUpdate
from utils.errors import ValidationError, ConflictError, NotFoundError


async def _count(session, model):
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar()


class TestCreateRule:

    @pytest.mark.asyncio
    async def test_create_rule_writes_audit_entry(self, db_session, rule_data):
        rule = await RuleRepository(db_session).create_rule(rule_data(), "admin@ctis")

        assert rule.id is not None
        assert rule.version == 1
        assert rule.tax_type == "GST"
        assert rule.created_by == "admin@ctis"

        history = await AuditLogRepository(db_session).entity_history(AuditEntityType.RULE, rule.id)
        assert len(history) == 1
        assert history[0].action == "CREATED"
        assert history[0].changed_by == "admin@ctis"
        assert '"days_from_trigger": 21' in history[0].new_value

    @pytest.mark.asyncio
    async def test_days_below_statutory_minimum_rejected(self, db_session, rule_data):
        with pytest.raises(ValidationError) as exc_info:
            await RuleRepository(db_session).create_rule(
                rule_data(days_from_trigger=15, statutory_minimum_days=21), "admin@ctis"
            )

        assert exc_info.value.field == "days_from_trigger"
        assert await _count(db_session, DeadlineRuleDB) == 0
        assert await _count(db_session, DeadlineAuditLogDB) == 0

    @pytest.mark.asyncio
    async def test_effective_after_expiry_rejected(self, db_session, rule_data):
        with pytest.raises(ValidationError):
            await RuleRepository(db_session).create_rule(
                rule_data(effective_date=date(2025, 6, 1), expiry_date=date(2025, 1, 1)), "admin@ctis"
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["tax_type", "rule_name", "trigger_type", "effective_date", "days_from_trigger"])
    async def test_required_fields(self, db_session, rule_data, missing):
        with pytest.raises(ValidationError) as exc_info:
            await RuleRepository(db_session).create_rule(rule_data(**{missing: None}), "admin@ctis")
        assert exc_info.value.field == missing

    @pytest.mark.asyncio
    async def test_blank_rule_name_rejected(self, db_session, rule_data):
        with pytest.raises(ValidationError):
            await RuleRepository(db_session).create_rule(rule_data(rule_name="   "), "admin@ctis")

    @pytest.mark.asyncio
    async def test_negative_minimum_rejected(self, db_session, rule_data):
        with pytest.raises(ValidationError):
            await RuleRepository(db_session).create_rule(
                rule_data(statutory_minimum_days=-1), "admin@ctis"
            )

    @pytest.mark.asyncio
    async def test_changed_by_required(self, db_session, rule_data):
        with pytest.raises(ValidationError):
            await RuleRepository(db_session).create_rule(rule_data(), "")


class TestUpdateRule:

    @pytest.mark.asyncio
    async def test_update_records_changed_fields(self, db_session, gst_rule):
        repo = RuleRepository(db_session)
        updated = await repo.update_rule(
            gst_rule.id,
            DeadlineRuleUpdate(days_from_trigger=30, expected_version=1),
            "manager@ctis",
        )

        assert updated.days_from_trigger == 30
        assert updated.version == 2
        assert updated.updated_by == "manager@ctis"

        history = await AuditLogRepository(db_session).entity_history(AuditEntityType.RULE, gst_rule.id)
        assert [h.action for h in history] == ["CREATED", "UPDATED"]
        assert history[1].field_name == "days_from_trigger"
        assert history[1].old_value == "21"
        assert history[1].new_value == "30"

    @pytest.mark.asyncio
    async def test_stale_expected_version_conflicts(self, db_session, gst_rule):
        repo = RuleRepository(db_session)
        await repo.update_rule(gst_rule.id, DeadlineRuleUpdate(description="v2"), "manager@ctis")

        with pytest.raises(ConflictError):
            await repo.update_rule(
                gst_rule.id,
                DeadlineRuleUpdate(description="v3", expected_version=1),
                "manager@ctis",
            )

    @pytest.mark.asyncio
    async def test_concurrent_writer_conflicts(self, session_factory, gst_rule):
        async with session_factory() as first, session_factory() as second:
            # First writer reads version 1 and holds it
            await RuleRepository(first).get_rule(gst_rule.id)

            await RuleRepository(second).update_rule(
                gst_rule.id, DeadlineRuleUpdate(days_from_trigger=25), "other@ctis"
            )

            with pytest.raises(ConflictError):
                await RuleRepository(first).update_rule(
                    gst_rule.id, DeadlineRuleUpdate(days_from_trigger=28), "admin@ctis"
                )

        async with session_factory() as check:
            rule = await RuleRepository(check).get_rule(gst_rule.id)
            assert rule.days_from_trigger == 25
            history = await AuditLogRepository(check).entity_history(AuditEntityType.RULE, gst_rule.id)
            assert [h.new_value for h in history if h.field_name == "days_from_trigger"] == ["25"]

    @pytest.mark.asyncio
    async def test_update_violating_minimum_rejected(self, db_session, gst_rule):
        with pytest.raises(ValidationError):
            await RuleRepository(db_session).update_rule(
                gst_rule.id, DeadlineRuleUpdate(days_from_trigger=15), "manager@ctis"
            )

        rule = await RuleRepository(db_session).get_rule(gst_rule.id)
        assert rule.days_from_trigger == 21
        assert rule.version == 1

    @pytest.mark.asyncio
    async def test_raising_both_fields_together(self, db_session, gst_rule):
        updated = await RuleRepository(db_session).update_rule(
            gst_rule.id,
            DeadlineRuleUpdate(days_from_trigger=45, statutory_minimum_days=30),
            "manager@ctis",
        )
        assert updated.days_from_trigger == 45
        assert updated.statutory_minimum_days == 30

    @pytest.mark.asyncio
    async def test_clearing_expiry_date(self, db_session, rule_data):
        repo = RuleRepository(db_session)
        rule = await repo.create_rule(rule_data(expiry_date=date(2025, 12, 31)), "admin@ctis")

        updated = await repo.update_rule(rule.id, DeadlineRuleUpdate(expiry_date=None), "admin@ctis")
        assert updated.expiry_date is None

    @pytest.mark.asyncio
    async def test_noop_update_writes_nothing(self, db_session, gst_rule):
        updated = await RuleRepository(db_session).update_rule(
            gst_rule.id, DeadlineRuleUpdate(days_from_trigger=21), "manager@ctis"
        )
        assert updated.version == 1
        history = await AuditLogRepository(db_session).entity_history(AuditEntityType.RULE, gst_rule.id)
        assert len(history) == 1

    @pytest.mark.asyncio
    async def test_update_unknown_rule(self, db_session):
        with pytest.raises(NotFoundError):
            await RuleRepository(db_session).update_rule(999, DeadlineRuleUpdate(description="x"), "admin@ctis")


class TestActivation:

    @pytest.mark.asyncio
    async def test_deactivate_records_prior_state(self, db_session, gst_rule):
        rule = await RuleRepository(db_session).deactivate_rule(gst_rule.id, "manager@ctis")
        assert rule.is_active is False

        history = await AuditLogRepository(db_session).entity_history(AuditEntityType.RULE, gst_rule.id)
        assert history[-1].action == "DEACTIVATED"
        assert history[-1].field_name == "is_active"
        assert history[-1].old_value == "true"
        assert history[-1].new_value == "false"

    @pytest.mark.asyncio
    async def test_repeat_deactivation_is_noop(self, db_session, gst_rule):
        repo = RuleRepository(db_session)
        await repo.deactivate_rule(gst_rule.id, "manager@ctis")
        await repo.deactivate_rule(gst_rule.id, "manager@ctis")

        history = await AuditLogRepository(db_session).entity_history(AuditEntityType.RULE, gst_rule.id)
        assert [h.action for h in history] == ["CREATED", "DEACTIVATED"]

    @pytest.mark.asyncio
    async def test_reactivate(self, db_session, gst_rule):
        repo = RuleRepository(db_session)
        await repo.deactivate_rule(gst_rule.id, "manager@ctis")
        rule = await repo.activate_rule(gst_rule.id, "manager@ctis", expected_version=2)
        assert rule.is_active is True
        assert rule.version == 3


class TestDeleteRule:

    @pytest.mark.asyncio
    async def test_rule_with_history_cannot_be_deleted(self, db_session, gst_rule):
        with pytest.raises(ConflictError):
            await RuleRepository(db_session).delete_rule(gst_rule.id, "admin@ctis")

        assert (await RuleRepository(db_session).get_rule(gst_rule.id)).id == gst_rule.id

    @pytest.mark.asyncio
    async def test_rule_without_history_deleted(self, db_session):
        # Row imported directly, so no audit entry references it yet
        imported = DeadlineRuleDB(
            tax_type=TaxType.PAYE,
            rule_name="Imported PAYE rule",
            days_from_trigger=21,
            trigger_type=TriggerType.PERIOD_END,
            adjust_for_weekends=True,
            adjust_for_holidays=True,
            statutory_minimum_days=21,
            is_default=True,
            is_active=True,
            effective_date=date(2024, 1, 1),
            created_by="import",
            created_at=utc_now(),
        )
        db_session.add(imported)
        await db_session.commit()
        rule_id = imported.id

        await RuleRepository(db_session).delete_rule(rule_id, "admin@ctis")

        with pytest.raises(NotFoundError):
            await RuleRepository(db_session).get_rule(rule_id)
        history = await AuditLogRepository(db_session).entity_history(AuditEntityType.RULE, rule_id)
        assert [h.action for h in history] == ["DELETED"]

    @pytest.mark.asyncio
    async def test_delete_unknown_rule(self, db_session):
        with pytest.raises(NotFoundError):
            await RuleRepository(db_session).delete_rule(12345, "admin@ctis")


class TestListRules:

    @pytest.mark.asyncio
    async def test_active_rules_respect_window(self, db_session, rule_data):
        repo = RuleRepository(db_session)
        current = await repo.create_rule(rule_data(), "admin@ctis")
        await repo.create_rule(
            rule_data(rule_name="Old GST rule", effective_date=date(2020, 1, 1), expiry_date=date(2023, 12, 31)),
            "admin@ctis",
        )
        await repo.create_rule(rule_data(tax_type="PAYE", rule_name="PAYE rule"), "admin@ctis")

        active = await repo.list_active_rules(TaxType.GST, as_of=date(2025, 3, 31))
        assert [r.id for r in active] == [current.id]

        every_rule = await repo.list_rules()
        assert len(every_rule) == 3

    @pytest.mark.asyncio
    async def test_inactive_excluded_on_request(self, db_session, gst_rule):
        repo = RuleRepository(db_session)
        await repo.deactivate_rule(gst_rule.id, "admin@ctis")
        assert await repo.list_rules(include_inactive=False) == []
        assert await repo.list_active_rules(as_of=date(2025, 1, 1)) == []

    @pytest.mark.asyncio
    async def test_audit_only_for_successful_writes(self, db_session, gst_rule):
        entries = await AuditLogRepository(db_session).list_entries()
        assert len(entries) == 1
        assert entries[0].action == AuditAction.CREATED.value


class TestAtomicAudit:
    """A rule change and its audit entries commit together or not at all"""

    @pytest.mark.asyncio
    async def test_failed_audit_write_discards_new_rule(self, db_session, rule_data, monkeypatch):
        def failing_append(self, *args, **kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr(AuditLogRepository, "append", failing_append)

        with pytest.raises(RuntimeError):
            await RuleRepository(db_session).create_rule(rule_data(), "admin@ctis")

        rules = await db_session.scalar(select(func.count()).select_from(DeadlineRuleDB))
        entries = await db_session.scalar(select(func.count()).select_from(DeadlineAuditLogDB))
        assert rules == 0
        assert entries == 0

    @pytest.mark.asyncio
    async def test_failed_audit_write_keeps_rule_active(self, db_session, gst_rule, monkeypatch):
        def failing_append(self, *args, **kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr(AuditLogRepository, "append", failing_append)

        repo = RuleRepository(db_session)
        with pytest.raises(RuntimeError):
            await repo.deactivate_rule(gst_rule.id, "admin@ctis")

        monkeypatch.undo()
        assert (await repo.get_rule(gst_rule.id)).is_active is True
        assert len(await AuditLogRepository(db_session).entity_history(AuditEntityType.RULE, gst_rule.id)) == 1
