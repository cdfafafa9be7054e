import dataclasses
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from twilio.request_validator import RequestValidator

from callpair import prompts
from callpair.bot import create_app
from callpair.db import init_db
from callpair.states import State
from callpair.twilio_routes import render
from callpair.state_machine import Action
from conftest import CALLBACK_NUMBER, CALLER, drain

BASE = "https://demo.example.com"


def _form(call_sid="CA1", **fields):
    return {"CallSid": call_sid, "From": CALLER, **fields}


async def _paired_call(client):
    created = (await client.post("/api/session")).json()
    await client.post("/twilio/voice", data=_form())
    await client.post("/twilio/gather?step=awaiting_name", data=_form(SpeechResult="Chris"))
    resp = await client.post(
        "/twilio/gather?step=awaiting_code",
        data=_form(SpeechResult=" ".join(created["pairCode"])),
    )
    return created["sessionId"], resp


class TestRender:
    def test_gather_with_hints_and_no_input_redirect(self):
        xml = str(render(Action(speak="Say the code.", state=State.AWAITING_CODE)))
        assert 'action="/twilio/gather?step=awaiting_code"' in xml
        assert 'input="speech"' in xml
        assert 'speechTimeout="auto"' in xml
        assert "hints=" in xml
        assert "Say the code.</Say></Gather>" in xml
        assert "/twilio/reprompt?step=awaiting_code</Redirect>" in xml

    def test_no_hints_for_free_text(self):
        xml = str(render(Action(speak="What's your name?", state=State.AWAITING_NAME)))
        assert "hints=" not in xml

    def test_session_id_carried_in_action(self):
        xml = str(render(Action(speak="Industry?", state=State.AWAITING_VERTICAL, session_id="s1")))
        assert "step=awaiting_vertical&amp;sessionId=s1" in xml

    def test_end_call_hangs_up(self):
        xml = str(render(Action(speak="Bye", state=State.COMPLETED, end_call=True)))
        assert "<Gather" not in xml
        assert "<Say" in xml
        assert "<Hangup />" in xml


class TestInboundFlow:
    @pytest.mark.asyncio
    async def test_voice_greets(self, client):
        resp = await client.post("/twilio/voice", data=_form())
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/xml")
        assert prompts.GREETING.split("?")[0] in resp.text
        assert "step=awaiting_name" in resp.text

    @pytest.mark.asyncio
    async def test_pairing_to_callback(self, app, client, dialer):
        session_id, resp = await _paired_call(client)
        assert f"step=awaiting_vertical&amp;sessionId={session_id}" in resp.text
        assert "Connected!" in resp.text

        query = f"sessionId={session_id}"
        await client.post(f"/twilio/gather?step=awaiting_vertical&{query}", data=_form(SpeechResult="insurance"))
        await client.post(f"/twilio/gather?step=awaiting_pain&{query}", data=_form(SpeechResult="speed"))
        resp = await client.post(
            f"/twilio/gather?step=awaiting_phone&{query}",
            data=_form(SpeechResult="4 1 5 5 5 5 1 2 3 4"),
        )
        assert "<Hangup />" in resp.text
        assert "415, 555, 1234" in resp.text

        await drain(app.state.machine)
        assert dialer.calls == [(CALLBACK_NUMBER, session_id, "Chris")]

        summary = (await client.get(f"/api/session/{session_id}")).json()
        assert summary["events"][0]["type"] == "callback_initiated"

    @pytest.mark.asyncio
    async def test_missing_speech_is_reprompted(self, client):
        await client.post("/twilio/voice", data=_form())
        await client.post("/twilio/gather?step=awaiting_name", data=_form(SpeechResult="Chris"))
        resp = await client.post("/twilio/gather?step=awaiting_code", data=_form())
        assert "one at a time" in resp.text

    @pytest.mark.asyncio
    async def test_reprompt_asks_again(self, client):
        resp = await client.post("/twilio/reprompt?step=awaiting_code", data=_form())
        assert prompts.NO_INPUT.split(".")[0] in resp.text
        assert "four digit code" in resp.text
        assert "step=awaiting_code" in resp.text

    @pytest.mark.asyncio
    async def test_step_failure_apologizes(self, app, client):
        app.state.machine.handle = AsyncMock(side_effect=RuntimeError("db down"))
        resp = await client.post("/twilio/gather?step=awaiting_name", data=_form(SpeechResult="Chris"))
        assert resp.status_code == 200
        assert "something went wrong" in resp.text
        assert "<Hangup />" in resp.text

    @pytest.mark.asyncio
    async def test_status_completed_ends_call(self, app, client):
        session_id, _ = await _paired_call(client)
        await client.post("/twilio/status", data=_form(CallStatus="completed", CallDuration="42"))
        assert "CA1" not in app.state.machine.registry
        summary = (await client.get(f"/api/session/{session_id}")).json()
        assert summary["events"][0]["type"] == "call_ended"
        assert summary["events"][0]["value"]["duration"] == 42

    @pytest.mark.asyncio
    async def test_status_in_progress_keeps_call(self, app, client):
        await client.post("/twilio/voice", data=_form())
        await client.post("/twilio/status", data=_form(CallStatus="in-progress"))
        assert "CA1" in app.state.machine.registry

    @pytest.mark.asyncio
    async def test_unseen_call_cannot_skip_pairing(self, client):
        created = (await client.post("/api/session")).json()
        resp = await client.post(
            f"/twilio/gather?step=awaiting_vertical&sessionId={created['sessionId']}",
            data=_form("CA-stranger", SpeechResult="insurance"),
        )
        assert prompts.VERIFY_FIRST in resp.text
        assert "step=awaiting_code" in resp.text
        assert created["sessionId"] not in resp.text

        summary = (await client.get(f"/api/session/{created['sessionId']}")).json()
        assert summary["status"] == "created"
        assert summary["events"] == []

    @pytest.mark.asyncio
    async def test_gather_after_hang_up_just_hangs_up(self, client):
        session_id, _ = await _paired_call(client)
        await client.post("/twilio/status", data=_form(CallStatus="completed"))
        resp = await client.post(
            f"/twilio/gather?step=awaiting_vertical&sessionId={session_id}",
            data=_form(SpeechResult="insurance"),
        )
        assert "<Hangup />" in resp.text
        assert "<Say" not in resp.text
        events = (await client.get(f"/api/session/{session_id}")).json()["events"]
        assert [e["type"] for e in events] == ["call_ended", "paired"]


class TestCallbackLeg:
    @pytest.mark.asyncio
    async def test_answer_greets_by_name(self, app, client):
        session_id, _ = await _paired_call(client)
        resp = await client.post(
            f"/twilio/callback-answer?sessionId={session_id}",
            data={"CallSid": "CA-callback", "To": CALLBACK_NUMBER},
        )
        assert "Hi Chris!" in resp.text
        assert "step=awaiting_schedule_answer" in resp.text

        resp = await client.post(
            f"/twilio/gather?step=awaiting_schedule_answer&sessionId={session_id}",
            data={"CallSid": "CA-callback", "From": CALLBACK_NUMBER, "SpeechResult": "yeah"},
        )
        assert "Monday, October 19 at 2:00 PM" in resp.text
        assert "<Hangup />" in resp.text

    @pytest.mark.asyncio
    async def test_answer_for_unknown_session(self, client):
        resp = await client.post("/twilio/callback-answer?sessionId=nope", data={"CallSid": "CA-callback"})
        assert "lost track of your session" in resp.text
        assert "<Hangup />" in resp.text

    @pytest.mark.asyncio
    async def test_status_events(self, client):
        session_id, _ = await _paired_call(client)
        for status in ("ringing", "busy"):
            resp = await client.post(
                f"/twilio/callback-status?sessionId={session_id}",
                data={"CallSid": "CA-callback", "CallStatus": status, "To": CALLBACK_NUMBER},
            )
            assert resp.status_code == 200
        events = (await client.get(f"/api/session/{session_id}")).json()["events"]
        assert [e["type"] for e in events[:2]] == ["callback_failed", "callback_ringing"]
        assert events[0]["value"]["status"] == "busy"


class TestSignatureValidation:
    @pytest_asyncio.fixture
    async def signed_client(self, settings, dialer, clock):
        app = create_app(dataclasses.replace(settings, validate_twilio_signature=True), dialer=dialer, clock=clock)
        await init_db(app.state.engine)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=BASE) as client:
            yield client
        await app.state.machine.shutdown()
        await app.state.engine.dispose()

    @pytest.mark.asyncio
    async def test_unsigned_request_rejected(self, signed_client):
        resp = await signed_client.post("/twilio/voice", data=_form())
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_signed_request_accepted(self, signed_client):
        params = _form()
        signature = RequestValidator("twilio-secret").compute_signature(f"{BASE}/twilio/voice", params)
        resp = await signed_client.post(
            "/twilio/voice", data=params, headers={"X-Twilio-Signature": signature}
        )
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_signature_covers_query_string(self, signed_client):
        params = _form(SpeechResult="Chris")
        url = f"{BASE}/twilio/gather?step=awaiting_name"
        signature = RequestValidator("twilio-secret").compute_signature(url, params)
        resp = await signed_client.post(
            "/twilio/gather?step=awaiting_name", data=params, headers={"X-Twilio-Signature": signature}
        )
        assert resp.status_code == 200
