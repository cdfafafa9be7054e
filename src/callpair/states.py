from enum import Enum

PAIRING_STATES = {"awaiting_name", "awaiting_code"}
PAIRED_STATES = {
    "awaiting_vertical", "awaiting_pain", "awaiting_phone",
    "callback_scheduled", "awaiting_schedule_answer",
}
TERMINAL_STATES = {
    "callback_scheduled", "completed", "locked_out",
    "pairing_failed", "gave_up", "callback_failed",
}


class State(Enum):
    AWAITING_NAME = "awaiting_name"
    AWAITING_CODE = "awaiting_code"
    AWAITING_VERTICAL = "awaiting_vertical"
    AWAITING_PAIN = "awaiting_pain"
    AWAITING_PHONE = "awaiting_phone"
    CALLBACK_SCHEDULED = "callback_scheduled"
    AWAITING_SCHEDULE_ANSWER = "awaiting_schedule_answer"
    COMPLETED = "completed"
    LOCKED_OUT = "locked_out"
    PAIRING_FAILED = "pairing_failed"
    GAVE_UP = "gave_up"
    CALLBACK_FAILED = "callback_failed"

    @property
    def is_pairing(self) -> bool:
        return self.value in PAIRING_STATES

    @property
    def requires_session(self) -> bool:
        return self.value in PAIRED_STATES

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_STATES

    @classmethod
    def from_step(cls, step: str | None) -> "State | None":
        """Map a transport step name back to a state; unknown names give None."""
        if not step:
            return None
        try:
            return cls(step)
        except ValueError:
            return None
