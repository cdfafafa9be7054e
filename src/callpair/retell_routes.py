"""Retell voice-agent webhooks.

The Retell agent does the talking; its custom functions hand us what the
caller said for one step at a time and speak back our ``result`` text.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from callpair import prompts
from callpair.states import State

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/retell")

# function name -> (step it answers, argument carrying the caller's words)
FUNCTION_STEPS = {
    "capture_name": (State.AWAITING_NAME, "name"),
    "verify_code": (State.AWAITING_CODE, "code"),
    "capture_vertical": (State.AWAITING_VERTICAL, "vertical"),
    "capture_pain": (State.AWAITING_PAIN, "pain"),
    "initiate_callback": (State.AWAITING_PHONE, "phone_number"),
    "schedule_appointment": (State.AWAITING_SCHEDULE_ANSWER, "wants_schedule"),
}


def _duration_seconds(call: dict) -> int | None:
    start, end = call.get("start_timestamp"), call.get("end_timestamp")
    if start and end:
        return round((end - start) / 1000)
    return None


@router.post("/webhook")
async def webhook(request: Request):
    body = await request.json()
    event = body.get("event", "")
    call = body.get("call") or {}
    call_id = call.get("call_id", "")
    session_id = (call.get("metadata") or {}).get("sessionId", "")
    machine = request.app.state.machine

    logger.info(f"Retell webhook {event} for call {call_id} ({call.get('call_status', '?')})")
    try:
        if event == "call_started":
            if session_id:
                # Outbound legs carry their session in metadata; starting means answered.
                await machine.callback_answered(session_id, call_id)
            else:
                machine.start_call(call_id, call.get("from_number", ""))
        elif event == "call_ended":
            await machine.end_call(call_id, _duration_seconds(call))
        elif event == "call_analyzed":
            logger.debug("Call analyzed: %s", call_id)
    except Exception:
        logger.exception("Retell webhook %s for call %s failed", event, call_id)
        return JSONResponse({"error": "Internal server error"}, status_code=500)
    return {"success": True}


@router.post("/custom-function")
async def custom_function(request: Request):
    body = await request.json()
    name = body.get("name", "")
    args = body.get("args") or {}
    call = body.get("call") or {}
    call_id = call.get("call_id", "")
    machine = request.app.state.machine

    if name not in FUNCTION_STEPS:
        logger.warning("Unknown Retell custom function: %s", name)
        return {"result": "Unknown function"}

    step, arg_name = FUNCTION_STEPS[name]
    session_id = str(args.get("session_id") or (call.get("metadata") or {}).get("sessionId") or "")
    try:
        action = await machine.handle(
            call_id,
            call.get("from_number", ""),
            step.value,
            str(args.get(arg_name) or ""),
            session_id,
        )
    except Exception:
        logger.exception(f"[{call_id}] Custom function {name} failed")
        return JSONResponse({"result": prompts.APOLOGY, "information": {"end_call": True}}, status_code=500)

    return {
        "result": action.speak,
        "information": {
            "state": action.state.value,
            "session_id": action.session_id or None,
            "end_call": action.end_call,
        },
    }
