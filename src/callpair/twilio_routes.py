"""Twilio <Gather> webhooks driving the conversation machine.

Every speech step posts to the same ``/twilio/gather`` action; the step
name and session id ride along in the query string so a restarted process
can rebuild the call leg from the request alone.
"""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response
from twilio.request_validator import RequestValidator
from twilio.twiml.voice_response import VoiceResponse

from callpair import prompts
from callpair.normalizer import mask_phone
from callpair.state_machine import Action
from callpair.states import State

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio")

ENDED_STATUSES = frozenset({"completed", "failed", "busy", "no-answer", "canceled"})


async def verify_signature(request: Request):
    settings = request.app.state.settings
    if not settings.validate_twilio_signature:
        return
    form = await request.form()
    url = f"{settings.base_url}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    signature = request.headers.get("X-Twilio-Signature", "")
    if not RequestValidator(settings.twilio_auth_token).validate(url, dict(form), signature):
        logger.warning("Rejected Twilio webhook with bad signature: %s", request.url.path)
        raise HTTPException(status_code=403, detail="Invalid Twilio signature")


def _xml(response: VoiceResponse) -> Response:
    return Response(content=str(response), media_type="application/xml")


def _query(state: State, session_id: str) -> str:
    params = {"step": state.value}
    if session_id:
        params["sessionId"] = session_id
    return urlencode(params)


def render(action: Action) -> VoiceResponse:
    response = VoiceResponse()
    if action.end_call:
        if action.speak:
            response.say(action.speak, voice=prompts.VOICE)
        response.pause(length=1)
        response.hangup()
        return response

    query = _query(action.state, action.session_id)
    gather_kwargs = {}
    hints = prompts.speech_hints(action.state)
    if hints:
        gather_kwargs["hints"] = hints
    gather = response.gather(
        input="speech",
        action=f"/twilio/gather?{query}",
        method="POST",
        speech_timeout="auto",
        language="en-US",
        **gather_kwargs,
    )
    if action.speak:
        gather.say(action.speak, voice=prompts.VOICE)
    # Only reached when the caller said nothing.
    response.redirect(f"/twilio/reprompt?{query}", method="POST")
    return response


def apology() -> VoiceResponse:
    response = VoiceResponse()
    response.say(prompts.APOLOGY, voice=prompts.VOICE)
    response.hangup()
    return response


@router.post("/voice", dependencies=[Depends(verify_signature)])
async def voice(request: Request):
    form = await request.form()
    machine = request.app.state.machine
    action = machine.start_call(form.get("CallSid", ""), form.get("From", ""))
    return _xml(render(action))


@router.post("/gather", dependencies=[Depends(verify_signature)])
async def gather(request: Request, step: str = "", sessionId: str = ""):
    form = await request.form()
    call_sid = form.get("CallSid", "")
    machine = request.app.state.machine
    try:
        action = await machine.handle(
            call_sid,
            form.get("From", ""),
            step,
            form.get("SpeechResult", ""),
            sessionId,
        )
    except Exception:
        logger.exception(f"[{call_sid}] Step {step or '?'} failed")
        return _xml(apology())
    return _xml(render(action))


@router.post("/reprompt", dependencies=[Depends(verify_signature)])
async def reprompt(request: Request, step: str = "", sessionId: str = ""):
    state = State.from_step(step) or State.AWAITING_NAME
    machine = request.app.state.machine
    speak = f"{prompts.NO_INPUT} {machine.reprompt_text(state)}"
    return _xml(render(Action(speak=speak, state=state, session_id=sessionId)))


@router.post("/callback-answer", dependencies=[Depends(verify_signature)])
async def callback_answer(request: Request, sessionId: str = ""):
    form = await request.form()
    machine = request.app.state.machine
    try:
        action = await machine.callback_answered(sessionId, form.get("CallSid", ""))
    except Exception:
        logger.exception("Callback answer for session %s failed", sessionId)
        return _xml(apology())
    return _xml(render(action))


@router.post("/callback-status", dependencies=[Depends(verify_signature)])
async def callback_status(request: Request, sessionId: str = ""):
    form = await request.form()
    status = form.get("CallStatus", "")
    call_sid = form.get("CallSid", "")
    logger.info(f"Callback {call_sid} to {mask_phone(form.get('To', ''))} status: {status}")
    await request.app.state.machine.callback_status(sessionId, status, call_sid)
    return PlainTextResponse("")


@router.post("/status", dependencies=[Depends(verify_signature)])
async def status(request: Request):
    form = await request.form()
    call_sid = form.get("CallSid", "")
    call_status = form.get("CallStatus", "")
    duration = form.get("CallDuration")
    logger.info(f"Call {call_sid} status: {call_status}, duration: {duration}s")
    if call_status in ENDED_STATUSES:
        await request.app.state.machine.end_call(call_sid, int(duration) if duration else None)
    return PlainTextResponse("")
