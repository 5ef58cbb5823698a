"""
API tests for the deadline endpoints.

Exercises the FastAPI app in-process through httpx with the database
dependency bound to a per-test SQLite file.

Run with: pytest tests/test_deadline_api.py -v
"""

import pytest

ADMIN_BASE = "/api/admin/deadline-rules"

GST_RULE = {
    "tax_type": "GST",
    "rule_name": "GST Standard Filing Deadline",
    "days_from_trigger": 21,
    "trigger_type": "PERIOD_END",
    "statutory_minimum_days": 21,
    "effective_date": "2024-01-01",
    "changed_by": "admin@ctis",
}


async def _create_gst_rule(client, **overrides):
    payload = {**GST_RULE, **overrides}
    response = await client.post(ADMIN_BASE, json=payload)
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestCalculateEndpoint:

    @pytest.mark.asyncio
    async def test_calculate(self, client):
        rule = await _create_gst_rule(client)

        response = await client.post("/api/deadlines/calculate", json={
            "tax_type": "GST",
            "trigger_date": "2025-03-31",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["deadline"] == "2025-04-21"
        assert body["data"]["rule_id"] == rule["id"]
        assert body["data"]["statutory_floor_applied"] is False

    @pytest.mark.asyncio
    async def test_tax_type_is_case_insensitive(self, client):
        await _create_gst_rule(client)

        response = await client.post("/api/deadlines/calculate", json={
            "tax_type": "gst",
            "trigger_date": "2025-03-31",
        })

        assert response.status_code == 200
        assert response.json()["data"]["tax_type"] == "GST"
        assert response.json()["data"]["deadline"] == "2025-04-21"

    @pytest.mark.asyncio
    async def test_no_applicable_rule(self, client):
        response = await client.post("/api/deadlines/calculate", json={
            "tax_type": "PAYE",
            "trigger_date": "2025-03-31",
        })

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"]["kind"] == "NoApplicableRuleError"

    @pytest.mark.asyncio
    async def test_unknown_tax_type_is_validation_error(self, client):
        response = await client.post("/api/deadlines/calculate", json={
            "tax_type": "DOG_LICENCE",
            "trigger_date": "2025-03-31",
        })

        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["error"]["kind"] == "ValidationError"
        assert body["error"]["field"] == "tax_type"

    @pytest.mark.asyncio
    async def test_missing_trigger_date(self, client):
        response = await client.post("/api/deadlines/calculate", json={"tax_type": "GST"})

        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_calculate_with_extension(self, client):
        await _create_gst_rule(client)
        grant = await client.post(f"{ADMIN_BASE}/extensions", json={
            "client_id": 42,
            "tax_type": "GST",
            "extension_days": 7,
            "reason": "Flooding in Freetown",
            "approved_by": "commissioner@nra",
            "granted_at": "2025-01-15T09:00:00Z",
        })
        assert grant.status_code == 201
        extension_id = grant.json()["data"]["id"]

        response = await client.post("/api/deadlines/calculate", json={
            "tax_type": "GST",
            "trigger_date": "2025-03-31",
            "client_id": 42,
        })
        assert response.json()["data"]["deadline"] == "2025-04-28"
        assert response.json()["data"]["extension_id"] == extension_id

        revoke = await client.post(f"{ADMIN_BASE}/extensions/{extension_id}/revoke", json={
            "revoked_by": "supervisor@nra",
        })
        assert revoke.json()["data"]["revoked"] is True

        response = await client.post("/api/deadlines/calculate", json={
            "tax_type": "GST",
            "trigger_date": "2025-03-31",
            "client_id": 42,
        })
        assert response.json()["data"]["deadline"] == "2025-04-21"

    @pytest.mark.asyncio
    async def test_reference_data(self, client):
        response = await client.get("/api/deadlines/reference-data")

        data = response.json()["data"]
        assert "GST" in data["tax_types"]
        assert data["trigger_types"] == ["PERIOD_END", "FIXED_CALENDAR_DATE", "EVENT_DATE"]


class TestRuleEndpoints:

    @pytest.mark.asyncio
    async def test_rule_below_minimum_rejected(self, client):
        response = await client.post(ADMIN_BASE, json={
            **GST_RULE, "days_from_trigger": 15,
        })

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["kind"] == "ValidationError"
        assert error["field"] == "days_from_trigger"

    @pytest.mark.asyncio
    async def test_get_unknown_rule(self, client):
        response = await client.get(f"{ADMIN_BASE}/9999")

        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "NotFoundError"

    @pytest.mark.asyncio
    async def test_update_and_version_conflict(self, client):
        rule = await _create_gst_rule(client)

        response = await client.put(f"{ADMIN_BASE}/{rule['id']}", json={
            "days_from_trigger": 30,
            "expected_version": 1,
            "changed_by": "manager@ctis",
        })
        assert response.status_code == 200
        assert response.json()["data"]["version"] == 2

        response = await client.put(f"{ADMIN_BASE}/{rule['id']}", json={
            "days_from_trigger": 35,
            "expected_version": 1,
            "changed_by": "manager@ctis",
        })
        assert response.status_code == 409
        assert response.json()["error"]["kind"] == "ConflictError"

    @pytest.mark.asyncio
    async def test_delete_rule_with_history_conflicts(self, client):
        rule = await _create_gst_rule(client)

        response = await client.delete(f"{ADMIN_BASE}/{rule['id']}", params={"changed_by": "admin@ctis"})

        assert response.status_code == 409
        assert response.json()["error"]["kind"] == "ConflictError"

    @pytest.mark.asyncio
    async def test_activate_deactivate_and_listing(self, client):
        rule = await _create_gst_rule(client)

        response = await client.post(f"{ADMIN_BASE}/{rule['id']}/deactivate", json={"changed_by": "manager@ctis"})
        assert response.json()["data"]["is_active"] is False

        active = await client.get(ADMIN_BASE, params={"as_of": "2025-03-31"})
        assert active.json()["data"] == []

        every_rule = await client.get(f"{ADMIN_BASE}/all")
        assert len(every_rule.json()["data"]) == 1

        response = await client.post(f"{ADMIN_BASE}/{rule['id']}/activate", json={"changed_by": "manager@ctis"})
        assert response.json()["data"]["is_active"] is True

        active = await client.get(ADMIN_BASE, params={"tax_type": "GST", "as_of": "2025-03-31"})
        assert [r["id"] for r in active.json()["data"]] == [rule["id"]]

    @pytest.mark.asyncio
    async def test_audit_history(self, client):
        rule = await _create_gst_rule(client)
        await client.post(f"{ADMIN_BASE}/{rule['id']}/deactivate", json={"changed_by": "manager@ctis"})

        response = await client.get(f"{ADMIN_BASE}/audit/RULE/{rule['id']}")
        actions = [e["action"] for e in response.json()["data"]]
        assert actions == ["CREATED", "DEACTIVATED"]

        response = await client.get(f"{ADMIN_BASE}/audit", params={"action": "DEACTIVATED"})
        assert len(response.json()["data"]) == 1


class TestHolidayEndpoints:

    @pytest.mark.asyncio
    async def test_add_list_remove(self, client):
        response = await client.post(f"{ADMIN_BASE}/holidays", json={
            "name": "Independence Day",
            "is_recurring": True,
            "recurring_month": 4,
            "recurring_day": 27,
            "changed_by": "admin@ctis",
        })
        assert response.status_code == 201
        holiday_id = response.json()["data"]["id"]

        dates = await client.get(f"{ADMIN_BASE}/holidays/2025/dates")
        assert dates.json()["data"] == ["2025-04-27"]

        listing = await client.get(f"{ADMIN_BASE}/holidays/2025")
        assert listing.json()["data"][0]["observed_date"] == "2025-04-27"

        response = await client.delete(f"{ADMIN_BASE}/holidays/{holiday_id}", params={"changed_by": "admin@ctis"})
        assert response.status_code == 200

        dates = await client.get(f"{ADMIN_BASE}/holidays/2025/dates")
        assert dates.json()["data"] == []

    @pytest.mark.asyncio
    async def test_holiday_shifts_calculation(self, client):
        await _create_gst_rule(client)
        await client.post(f"{ADMIN_BASE}/holidays", json={
            "name": "Easter Monday",
            "date": "2025-04-21",
            "changed_by": "admin@ctis",
        })

        response = await client.post("/api/deadlines/calculate", json={
            "tax_type": "GST",
            "trigger_date": "2025-03-31",
        })
        assert response.json()["data"]["deadline"] == "2025-04-22"

    @pytest.mark.asyncio
    async def test_invalid_holiday(self, client):
        response = await client.post(f"{ADMIN_BASE}/holidays", json={
            "name": "Broken",
            "is_recurring": True,
            "recurring_month": 2,
            "recurring_day": 30,
            "changed_by": "admin@ctis",
        })
        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "ValidationError"


class TestExtensionEndpoints:

    @pytest.mark.asyncio
    async def test_client_listing_and_active_lookup(self, client):
        await client.post(f"{ADMIN_BASE}/extensions", json={
            "client_id": 5,
            "tax_type": "PAYE",
            "tax_year": 2025,
            "extension_days": 10,
            "reason": "System outage",
            "approved_by": "commissioner@nra",
            "granted_at": "2025-01-02T08:00:00Z",
        })

        listing = await client.get(f"{ADMIN_BASE}/extensions/client/5")
        assert len(listing.json()["data"]) == 1

        active = await client.get(f"{ADMIN_BASE}/extensions/active", params={
            "client_id": 5, "tax_type": "PAYE", "tax_year": 2025, "as_of": "2025-02-01",
        })
        assert active.json()["data"]["extension_days"] == 10

        other_year = await client.get(f"{ADMIN_BASE}/extensions/active", params={
            "client_id": 5, "tax_type": "PAYE", "tax_year": 2024, "as_of": "2025-02-01",
        })
        assert other_year.json()["data"] is None

    @pytest.mark.asyncio
    async def test_negative_extension_rejected(self, client):
        response = await client.post(f"{ADMIN_BASE}/extensions", json={
            "client_id": 5,
            "tax_type": "PAYE",
            "extension_days": -3,
            "reason": "Typo",
            "approved_by": "commissioner@nra",
        })
        assert response.status_code == 422
        assert response.json()["error"]["field"] == "extension_days"

    @pytest.mark.asyncio
    async def test_revoke_unknown(self, client):
        response = await client.post(f"{ADMIN_BASE}/extensions/404/revoke", json={"revoked_by": "x@nra"})
        assert response.status_code == 404


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_missing_api_key_rejected(self, client):
        from server import app
        from middleware.internal_auth import require_internal_service

        app.dependency_overrides.pop(require_internal_service, None)

        response = await client.post("/api/deadlines/calculate", json={
            "tax_type": "GST",
            "trigger_date": "2025-03-31",
        })
        assert response.status_code == 401
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_valid_api_key_accepted(self, client, monkeypatch):
        from server import app
        from middleware.internal_auth import require_internal_service, _get_valid_api_keys

        monkeypatch.setenv("INTERNAL_API_KEY", "test-internal-key-0123456789")
        _get_valid_api_keys.cache_clear()
        app.dependency_overrides.pop(require_internal_service, None)

        try:
            response = await client.get(
                "/api/deadlines/reference-data",
                headers={"X-Internal-Api-Key": "test-internal-key-0123456789", "X-Service-Name": "filing"},
            )
            assert response.status_code == 200
        finally:
            _get_valid_api_keys.cache_clear()


class TestHealth:

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/api/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_unknown_route_uses_error_envelope(self, client):
        response = await client.get("/api/not-a-route")
        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": {"kind": "NotFoundError", "message": "Not Found"},
        }
