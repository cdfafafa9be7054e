"""Pairing and demo conversation flow, shared by every voice transport.

Transports hand the machine one caller utterance at a time and get back an
Action: what to say, which step comes next, and whether to hang up. Twilio
webhooks, Retell custom functions and the Pipecat media stream all drive
this same object.

Every event that moves the demo forward is appended to the session's event
log and then broadcast to watching browsers. The append is durable and
propagates errors; the broadcast is best-effort.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime

from callpair import prompts
from callpair.broadcast import Broadcaster
from callpair.dialer import Dialer
from callpair.models import SessionStatus, utcnow
from callpair.normalizer import (
    format_appointment_date,
    is_affirmative,
    mask_phone,
    next_business_day,
    parse_code,
    parse_pain,
    parse_phone_number,
    parse_vertical,
    sanitize_name,
)
from callpair.rate_limit import RateLimiter
from callpair.session import CallRegistry, CallSession
from callpair.states import State
from callpair.store import SessionStore, iso

logger = logging.getLogger(__name__)

APPOINTMENT_TIME = "2:00 PM"
FAILED_CALLBACK_STATUSES = frozenset({"busy", "no-answer", "failed", "canceled"})
ANONYMOUS_CALLER = "anonymous"
PAIRED_STATUSES = (SessionStatus.PAIRED.value, SessionStatus.ACTIVE.value)


@dataclass
class Action:
    speak: str = ""
    state: State = State.AWAITING_NAME
    end_call: bool = False
    session_id: str = ""


def _transition(call: CallSession, new_state: State):
    logger.info(f"[{call.call_leg_id}] {call.state.value} -> {new_state.value}")
    call.state = new_state
    call.state_turn_count = 0


class ConversationMachine:
    def __init__(
        self,
        store: SessionStore,
        rate_limiter: RateLimiter,
        broadcaster: Broadcaster,
        dialer: Dialer,
        registry: CallRegistry | None = None,
        *,
        max_code_attempts: int = 3,
        max_step_reprompts: int | None = None,
        callback_delay: float = 3.0,
        clock=utcnow,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.broadcaster = broadcaster
        self.dialer = dialer
        self.registry = registry if registry is not None else CallRegistry()
        self.max_code_attempts = max_code_attempts
        self.max_step_reprompts = max_step_reprompts
        self.callback_delay = callback_delay
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    # ── Inbound leg ──

    def start_call(self, call_leg_id: str, caller_id: str = "") -> Action:
        call = self.registry.start(call_leg_id, caller_id)
        logger.info(f"[{call_leg_id}] Inbound call from {mask_phone(caller_id)}")
        return Action(speak=prompts.GREETING, state=call.state)

    async def handle(
        self,
        call_leg_id: str,
        caller_id: str,
        step: str | None,
        transcript: str,
        session_id: str = "",
    ) -> Action:
        """Advance one call leg by one caller utterance."""
        call = self.registry.get(call_leg_id)
        if call is None:
            ended = self.registry.ended_state(call_leg_id)
            if ended is not None:
                logger.warning(f"[{call_leg_id}] Step {step} after hang-up, ignoring")
                return Action(state=ended, end_call=True)
            if not await self._owns_session(call_leg_id, State.from_step(step), session_id):
                session_id = ""
            call = self.registry.get_or_restore(call_leg_id, caller_id, step, session_id)
        call.touch()
        call.turn_count += 1

        requested = State.from_step(step)
        if requested is not None and requested.requires_session and call.state.is_pairing:
            logger.warning(f"[{call_leg_id}] {requested.value} requested before pairing")
            return self._action(call, prompts.VERIFY_FIRST)

        if call.state.is_terminal:
            return self._action(call, "", end_call=True)

        if requested is not None and requested != call.state:
            # Out-of-order step (duplicate webhook, agent skipping ahead): ask the current question again.
            logger.info(f"[{call_leg_id}] Got {requested.value} while in {call.state.value}")
            return self._action(call, self.reprompt_text(call.state))

        handler = getattr(self, f"_handle_{call.state.value}")
        return await handler(call, transcript or "")

    async def _owns_session(self, call_leg_id: str, state: State | None, session_id: str) -> bool:
        """Whether a leg we have no memory of may resume ``session_id`` at ``state``.

        The inbound leg must be the one that paired the session. The schedule
        question belongs to the callback leg we dialed, after it answered.
        """
        if not session_id or state is None or not state.requires_session:
            return False
        session = await self.store.get_session(session_id)
        if session is None:
            return False
        if state == State.AWAITING_SCHEDULE_ANSWER:
            owned = (
                session.status == SessionStatus.ACTIVE.value
                and call_leg_id in await self.store.callback_leg_ids(session_id)
            )
        else:
            owned = session.status in PAIRED_STATUSES and session.call_leg_id == call_leg_id
        if not owned:
            logger.warning(f"[{call_leg_id}] Refusing to resume session {session_id} ({session.status})")
        return owned

    def reprompt_text(self, state: State) -> str:
        return prompts.STATE_QUESTIONS.get(state, "")

    def _action(self, call: CallSession, speak: str, end_call: bool = False) -> Action:
        return Action(speak=speak, state=call.state, end_call=end_call, session_id=call.session_id)

    def _reprompt(self, call: CallSession, speak: str) -> Action:
        call.state_turn_count += 1
        if self.max_step_reprompts is not None and call.state_turn_count > self.max_step_reprompts:
            logger.warning(f"[{call.call_leg_id}] Gave up after {call.state_turn_count} tries in {call.state.value}")
            _transition(call, State.GAVE_UP)
            return self._action(call, prompts.GAVE_UP, end_call=True)
        return self._action(call, speak)

    # ── State handlers ──

    async def _handle_awaiting_name(self, call: CallSession, text: str) -> Action:
        call.caller_name = sanitize_name(text)
        _transition(call, State.AWAITING_CODE)
        return self._action(call, prompts.ask_code(call.caller_name))

    async def _handle_awaiting_code(self, call: CallSession, text: str) -> Action:
        caller_key = call.caller_id or ANONYMOUS_CALLER

        limit = await self.rate_limiter.check_rate_limit(caller_key)
        if not limit.allowed:
            _transition(call, State.LOCKED_OUT)
            return self._action(call, prompts.locked_out(self._wait_seconds(limit.locked_until)), end_call=True)

        parsed = parse_code(text)
        paired = None
        if parsed.matched:
            session = await self.store.find_session_by_code(parsed.code)
            if session is not None:
                # None here means another caller claimed it first.
                paired = await self.store.pair_session(
                    session.id, caller_key, call.display_name, call.call_leg_id
                )

        if paired is None:
            call.code_attempts += 1
            failure = await self.rate_limiter.record_failed_attempt(caller_key)
            logger.info(
                f"[{call.call_leg_id}] Code attempt {call.code_attempts} failed "
                f"(parsed={parsed.matched}, locked={failure.locked})"
            )
            if failure.locked or call.code_attempts >= self.max_code_attempts:
                _transition(call, State.PAIRING_FAILED)
                return self._action(call, prompts.CODE_GIVE_UP, end_call=True)
            return self._action(call, prompts.CODE_RETRY if not parsed.matched else prompts.CODE_NOT_FOUND)

        await self.rate_limiter.clear_rate_limit(caller_key)
        call.session_id = paired.id
        await self._broadcast(paired.id, "paired", {
            "callerName": call.display_name,
            "timestamp": self._now_iso(),
        })
        _transition(call, State.AWAITING_VERTICAL)
        return self._action(call, prompts.paired(call.display_name))

    async def _handle_awaiting_vertical(self, call: CallSession, text: str) -> Action:
        vertical = parse_vertical(text)
        if vertical is None:
            return self._reprompt(call, prompts.VERTICAL_RETRY)

        await self._emit(call.session_id, "vertical_selected", {"vertical": vertical, "raw": text})
        await self.store.extend_session(call.session_id)
        _transition(call, State.AWAITING_PAIN)
        return self._action(call, prompts.vertical_selected(vertical))

    async def _handle_awaiting_pain(self, call: CallSession, text: str) -> Action:
        pain = parse_pain(text)
        if pain is None:
            return self._reprompt(call, prompts.PAIN_RETRY)

        await self._emit(call.session_id, "pain_selected", {
            "pain": pain,
            "isSpam": pain == "spam_flags",
            "raw": text,
        })
        await self.store.extend_session(call.session_id)
        _transition(call, State.AWAITING_PHONE)
        return self._action(call, prompts.pain_selected(pain))

    async def _handle_awaiting_phone(self, call: CallSession, text: str) -> Action:
        parsed = parse_phone_number(text)
        if not parsed.matched:
            return self._reprompt(call, prompts.PHONE_RETRY)

        await self.store.update_session_phone(call.session_id, parsed.e164)
        await self._emit(call.session_id, "callback_preparing", {"phoneNumber": mask_phone(parsed.e164)})
        self.schedule_callback(call.session_id, parsed.e164, call.display_name)
        _transition(call, State.CALLBACK_SCHEDULED)
        return self._action(call, prompts.callback_readback(parsed.e164), end_call=True)

    async def _handle_awaiting_schedule_answer(self, call: CallSession, text: str) -> Action:
        if not text.strip():
            return self._reprompt(call, prompts.SCHEDULE_RETRY)

        if is_affirmative(text):
            await self._emit(call.session_id, "schedule_requested", {})
            day = format_appointment_date(next_business_day(self._clock().date()))
            await self._emit(call.session_id, "appointment_scheduled", {"date": day, "time": APPOINTMENT_TIME})
            speak = prompts.appointment_booked(day, APPOINTMENT_TIME)
        else:
            await self._emit(call.session_id, "schedule_declined", {})
            speak = prompts.schedule_declined()

        await self._emit(call.session_id, "demo_completed", {})
        _transition(call, State.COMPLETED)
        return self._action(call, speak, end_call=True)

    # ── Callback leg ──

    def schedule_callback(self, session_id: str, phone: str, caller_name: str) -> asyncio.Task:
        task = asyncio.create_task(self._deferred_callback(session_id, phone, caller_name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deferred_callback(self, session_id: str, phone: str, caller_name: str):
        # Give the inbound leg time to hang up before the caller's phone rings.
        await asyncio.sleep(self.callback_delay)
        try:
            await self.trigger_callback(session_id, phone, caller_name)
        except Exception as e:
            logger.exception("Callback for session %s failed: %s", session_id, e)
            try:
                await self._emit(session_id, "callback_failed", {"error": "Failed to place call"})
            except Exception:
                logger.exception("Could not record callback_failed for session %s", session_id)

    async def trigger_callback(self, session_id: str, phone: str, caller_name: str) -> str:
        await self._emit(session_id, "callback_dialing", {
            "phoneNumber": mask_phone(phone),
            "callerName": caller_name,
        })
        call_leg_id = await self.dialer.place_call(phone, session_id, caller_name)
        self.registry.start(
            call_leg_id,
            phone,
            state=State.AWAITING_SCHEDULE_ANSWER,
            caller_name=caller_name,
            session_id=session_id,
            is_callback_leg=True,
        )
        await self._emit(session_id, "callback_initiated", {"callLegId": call_leg_id})
        return call_leg_id

    async def callback_answered(self, session_id: str, call_leg_id: str = "") -> Action:
        session = await self.store.get_session(session_id)
        if session is None or session.status == SessionStatus.EXPIRED.value:
            logger.warning("Callback answered for unknown or expired session %s", session_id)
            return Action(speak=prompts.SESSION_LOST, state=State.CALLBACK_FAILED, end_call=True)

        await self.store.activate_session(session_id)
        name = session.caller_name or "there"
        await self._emit(session_id, "callback_answered", {"callerName": name})

        if call_leg_id:
            call = self.registry.get_or_restore(
                call_leg_id, session.caller_number or "", State.AWAITING_SCHEDULE_ANSWER.value, session_id
            )
            call.caller_name = call.caller_name or name
            call.is_callback_leg = True
        return Action(
            speak=prompts.callback_greeting(name),
            state=State.AWAITING_SCHEDULE_ANSWER,
            session_id=session_id,
        )

    async def callback_status(self, session_id: str, status: str, call_leg_id: str = "") -> None:
        if await self.store.get_session(session_id) is None:
            logger.info("Ignoring %s status for unknown session %s", status, session_id)
            return

        if status == "ringing":
            await self._emit(session_id, "callback_ringing", {})
        elif status in FAILED_CALLBACK_STATUSES:
            await self._emit(session_id, "callback_failed", {"status": status})
            call = self.registry.get(call_leg_id) if call_leg_id else None
            if call is not None:
                _transition(call, State.CALLBACK_FAILED)
                self.registry.end(call_leg_id)
        elif status == "completed" and call_leg_id:
            self.registry.end(call_leg_id)

    # ── Teardown ──

    async def end_call(self, call_leg_id: str, duration: int | None = None) -> CallSession | None:
        call = self.registry.end(call_leg_id)
        if call is None:
            return None
        if call.session_id and not call.is_callback_leg:
            await self._emit(call.session_id, "call_ended", {"duration": duration, "state": call.state.value})
        logger.info(f"[{call_leg_id}] Call ended in {call.state.value} after {call.turn_count} turns")
        return call

    async def shutdown(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    # ── Events ──

    async def _emit(self, session_id: str, event_type: str, payload: dict):
        payload = {**payload, "timestamp": self._now_iso()}
        await self.store.append_event(session_id, event_type, payload)
        await self._broadcast(session_id, event_type, payload)

    async def _broadcast(self, session_id: str, event_type: str, payload: dict):
        try:
            await self.broadcaster.notify(session_id, event_type, payload)
        except Exception as e:
            logger.warning("Broadcast of %s for session %s failed: %s", event_type, session_id, e)

    def _wait_seconds(self, locked_until: datetime | None) -> int:
        if locked_until is None:
            return int(self.rate_limiter.lockout.total_seconds())
        return max(math.ceil((locked_until - self._clock()).total_seconds()), 1)

    def _now_iso(self) -> str:
        return iso(self._clock())
