from unittest.mock import AsyncMock

import pytest

from callpair import prompts
from conftest import CALLBACK_NUMBER, CALLER, drain


def _call(call_id="call_in", **fields):
    return {"call_id": call_id, "from_number": CALLER, **fields}


async def _function(client, name, args, call=None):
    resp = await client.post(
        "/retell/custom-function",
        json={"name": name, "args": args, "call": call or _call()},
    )
    assert resp.status_code == 200
    return resp.json()


class TestWebhook:
    @pytest.mark.asyncio
    async def test_inbound_call_started_registers_leg(self, app, client):
        resp = await client.post("/retell/webhook", json={"event": "call_started", "call": _call()})
        assert resp.json() == {"success": True}
        assert "call_in" in app.state.machine.registry

    @pytest.mark.asyncio
    async def test_outbound_call_started_means_answered(self, app, client):
        created = (await client.post("/api/session")).json()
        await _function(client, "capture_name", {"name": "Chris"})
        await _function(client, "verify_code", {"code": created["pairCode"]})

        call = _call("call_out", metadata={"sessionId": created["sessionId"]}, to_number=CALLBACK_NUMBER)
        await client.post("/retell/webhook", json={"event": "call_started", "call": call})

        summary = (await client.get(f"/api/session/{created['sessionId']}")).json()
        assert summary["status"] == "active"
        assert summary["events"][0]["type"] == "callback_answered"

    @pytest.mark.asyncio
    async def test_call_ended_records_duration(self, client):
        created = (await client.post("/api/session")).json()
        await _function(client, "capture_name", {"name": "Chris"})
        await _function(client, "verify_code", {"code": created["pairCode"]})

        call = _call(start_timestamp=1_700_000_000_000, end_timestamp=1_700_000_042_400)
        await client.post("/retell/webhook", json={"event": "call_ended", "call": call})

        events = (await client.get(f"/api/session/{created['sessionId']}")).json()["events"]
        assert events[0]["type"] == "call_ended"
        assert events[0]["value"]["duration"] == 42

    @pytest.mark.asyncio
    async def test_analyzed_is_acknowledged(self, client):
        resp = await client.post("/retell/webhook", json={"event": "call_analyzed", "call": _call()})
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_failure_is_500(self, app, client):
        app.state.machine.end_call = AsyncMock(side_effect=RuntimeError("db down"))
        resp = await client.post("/retell/webhook", json={"event": "call_ended", "call": _call()})
        assert resp.status_code == 500


class TestCustomFunctions:
    @pytest.mark.asyncio
    async def test_full_agent_flow(self, app, client, dialer):
        created = (await client.post("/api/session")).json()
        session_id = created["sessionId"]

        body = await _function(client, "capture_name", {"name": "Chris"})
        assert "Chris" in body["result"]
        assert body["information"] == {"state": "awaiting_code", "session_id": None, "end_call": False}

        body = await _function(client, "verify_code", {"code": created["pairCode"]})
        assert body["information"]["state"] == "awaiting_vertical"
        assert body["information"]["session_id"] == session_id

        body = await _function(client, "capture_vertical", {"vertical": "Real Estate", "session_id": session_id})
        assert body["information"]["state"] == "awaiting_pain"

        body = await _function(client, "capture_pain", {"pain": "spam flags", "session_id": session_id})
        assert body["information"]["state"] == "awaiting_phone"

        body = await _function(client, "initiate_callback", {"phone_number": "4155551234", "session_id": session_id})
        assert body["information"]["end_call"] is True

        await drain(app.state.machine)
        assert dialer.calls == [(CALLBACK_NUMBER, session_id, "Chris")]

        body = await _function(
            client,
            "schedule_appointment",
            {"wants_schedule": "yes"},
            call=_call("CA-callback", from_number=CALLBACK_NUMBER, metadata={"sessionId": session_id}),
        )
        assert body["information"]["state"] == "completed"
        assert "Monday, October 19" in body["result"]

    @pytest.mark.asyncio
    async def test_step_before_pairing_asks_for_code(self, client):
        body = await _function(client, "capture_pain", {"pain": "speed"})
        assert body["result"] == prompts.VERIFY_FIRST

    @pytest.mark.asyncio
    async def test_unseen_call_cannot_drive_unpaired_session(self, client):
        created = (await client.post("/api/session")).json()
        body = await _function(
            client,
            "capture_vertical",
            {"vertical": "insurance", "session_id": created["sessionId"]},
            call=_call("call_stranger"),
        )
        assert body["result"] == prompts.VERIFY_FIRST
        assert body["information"]["state"] == "awaiting_code"

        summary = (await client.get(f"/api/session/{created['sessionId']}")).json()
        assert summary["status"] == "created"
        assert summary["events"] == []

    @pytest.mark.asyncio
    async def test_function_after_call_ended_hangs_up(self, client):
        created = (await client.post("/api/session")).json()
        await _function(client, "capture_name", {"name": "Chris"})
        await _function(client, "verify_code", {"code": created["pairCode"]})
        await client.post("/retell/webhook", json={"event": "call_ended", "call": _call()})

        body = await _function(client, "capture_vertical", {"vertical": "insurance", "session_id": created["sessionId"]})
        assert body["information"]["end_call"] is True
        events = (await client.get(f"/api/session/{created['sessionId']}")).json()["events"]
        assert [e["type"] for e in events] == ["call_ended", "paired"]

    @pytest.mark.asyncio
    async def test_unknown_function(self, client):
        resp = await client.post("/retell/custom-function", json={"name": "launch_rockets", "args": {}})
        assert resp.json() == {"result": "Unknown function"}

    @pytest.mark.asyncio
    async def test_failure_apologizes(self, app, client):
        app.state.machine.handle = AsyncMock(side_effect=RuntimeError("db down"))
        resp = await client.post(
            "/retell/custom-function",
            json={"name": "capture_name", "args": {"name": "Chris"}, "call": _call()},
        )
        assert resp.status_code == 500
        assert resp.json()["result"] == prompts.APOLOGY
