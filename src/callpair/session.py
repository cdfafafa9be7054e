"""Call-scoped working memory.

One CallSession per live call leg, owned by CallRegistry. Nothing here is
durable: losing an entry (process restart, prune) only means the caller is
asked again. The durable record is the store's Session row.
"""

import logging
import time
from dataclasses import dataclass, field

from callpair.normalizer import DEFAULT_CALLER_NAME
from callpair.states import State

logger = logging.getLogger(__name__)

MAX_ENDED_LEGS = 10_000


@dataclass
class CallSession:
    call_leg_id: str
    caller_id: str = ""
    state: State = State.AWAITING_NAME

    # From AWAITING_NAME
    caller_name: str = ""

    # From AWAITING_CODE
    session_id: str = ""
    code_attempts: int = 0

    # Outbound callback leg (set on the leg we dialed, not the inbound one)
    is_callback_leg: bool = False

    # Metadata
    turn_count: int = 0
    state_turn_count: int = 0
    started_at: float = field(default_factory=time.monotonic)
    last_seen: float = field(default_factory=time.monotonic)

    @property
    def display_name(self) -> str:
        return self.caller_name or DEFAULT_CALLER_NAME

    def touch(self) -> None:
        self.last_seen = time.monotonic()


class CallRegistry:
    """In-process map of call_leg_id -> CallSession.

    Legs that hung up are remembered for a while so a late webhook for them
    gets a hang-up instead of a rebuilt conversation.
    """

    def __init__(self, max_ended: int = MAX_ENDED_LEGS):
        self._calls: dict[str, CallSession] = {}
        # call_leg_id -> (ended at, final state), oldest first
        self._ended: dict[str, tuple[float, State]] = {}
        self.max_ended = max_ended

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, call_leg_id: str) -> bool:
        return call_leg_id in self._calls

    def start(self, call_leg_id: str, caller_id: str = "", **fields) -> CallSession:
        call = CallSession(call_leg_id=call_leg_id, caller_id=caller_id, **fields)
        self._calls[call_leg_id] = call
        self._ended.pop(call_leg_id, None)
        logger.debug("Call leg %s registered in %s", call_leg_id, call.state.value)
        return call

    def get(self, call_leg_id: str) -> CallSession | None:
        return self._calls.get(call_leg_id)

    def ended_state(self, call_leg_id: str) -> State | None:
        """The state a hung-up leg ended in, or None if it never ended here."""
        ended = self._ended.get(call_leg_id)
        return ended[1] if ended else None

    def get_or_restore(
        self,
        call_leg_id: str,
        caller_id: str = "",
        step: str | None = None,
        session_id: str = "",
    ) -> CallSession:
        """Return the live entry, or rebuild one from what the transport carried.

        Callers must have checked that ``session_id`` really belongs to this
        leg. A post-pairing step without one restarts at the code prompt.
        """
        call = self._calls.get(call_leg_id)
        if call is not None:
            if caller_id and not call.caller_id:
                call.caller_id = caller_id
            return call

        state = State.from_step(step) or State.AWAITING_NAME
        if state.requires_session and not session_id:
            state = State.AWAITING_CODE
        if state.is_pairing:
            session_id = ""
        logger.info(f"Restoring call leg {call_leg_id} at {state.value}")
        return self.start(call_leg_id, caller_id, state=state, session_id=session_id)

    def end(self, call_leg_id: str) -> CallSession | None:
        call = self._calls.pop(call_leg_id, None)
        if call is not None:
            self._ended[call_leg_id] = (time.monotonic(), call.state)
            while len(self._ended) > self.max_ended:
                del self._ended[next(iter(self._ended))]
        return call

    def prune(self, max_idle_seconds: float) -> int:
        cutoff = time.monotonic() - max_idle_seconds
        stale = [leg for leg, call in self._calls.items() if call.last_seen < cutoff]
        for leg in stale:
            del self._calls[leg]
        for leg in [leg for leg, (ended_at, _) in self._ended.items() if ended_at < cutoff]:
            del self._ended[leg]
        if stale:
            logger.info("Pruned %d idle call legs", len(stale))
        return len(stale)
