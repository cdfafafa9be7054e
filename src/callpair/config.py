"""Runtime configuration and startup validation.

Settings are read from the environment once (``get_settings`` is cached) so
every component sees the same values. ``validate_config`` runs when the
server starts so that a missing key fails loudly at boot rather than on the
first callback attempt mid-demo.
"""

import os
import sys
import logging
from dataclasses import dataclass
from functools import lru_cache

logger = logging.getLogger(__name__)

REQUIRED_VARS = {
    "twilio": ["TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER", "BASE_URL"],
    "retell": ["RETELL_API_KEY", "RETELL_AGENT_ID", "TWILIO_PHONE_NUMBER"],
}

OPTIONAL_VARS = [
    "DATABASE_URL",
    "DEEPGRAM_API_KEY",
    "RETELL_CALLBACK_AGENT_ID",
    "MAX_STEP_REPROMPTS",
    "LOG_LEVEL",
]


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    return int(raw) if raw.strip() else default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    return float(raw) if raw.strip() else default


def _bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./callpair.db"
    base_url: str = "http://localhost:8765"
    port: int = 8765
    log_level: str = "INFO"

    # Telephony
    dialer: str = "twilio"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    validate_twilio_signature: bool = False
    retell_api_key: str = ""
    retell_agent_id: str = ""
    retell_callback_agent_id: str = ""
    deepgram_api_key: str = ""
    deepgram_tts_voice: str = "aura-2-helena-en"

    # Session lifecycle
    session_expiry_minutes: int = 10
    paired_session_expiry_minutes: int = 30
    sweep_interval_seconds: float = 60.0

    # Abuse protection
    max_pairing_attempts: int = 3
    lockout_duration_seconds: int = 60

    # Conversation
    max_code_attempts: int = 3
    max_step_reprompts: int | None = None
    callback_delay_seconds: float = 3.0
    call_state_ttl_seconds: float = 3600.0

    @classmethod
    def from_env(cls) -> "Settings":
        reprompts = os.getenv("MAX_STEP_REPROMPTS", "").strip()
        return cls(
            database_url=os.getenv("DATABASE_URL") or cls.database_url,
            base_url=(os.getenv("BASE_URL") or cls.base_url).rstrip("/"),
            port=_int("PORT", cls.port),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            dialer=os.getenv("DIALER", cls.dialer).strip().lower(),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
            twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
            validate_twilio_signature=_bool("VALIDATE_TWILIO_SIGNATURE"),
            retell_api_key=os.getenv("RETELL_API_KEY", ""),
            retell_agent_id=os.getenv("RETELL_AGENT_ID", ""),
            retell_callback_agent_id=os.getenv("RETELL_CALLBACK_AGENT_ID", ""),
            deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
            deepgram_tts_voice=os.getenv("DEEPGRAM_TTS_VOICE", cls.deepgram_tts_voice),
            session_expiry_minutes=_int("SESSION_EXPIRY_MINUTES", cls.session_expiry_minutes),
            paired_session_expiry_minutes=_int(
                "PAIRED_SESSION_EXPIRY_MINUTES", cls.paired_session_expiry_minutes
            ),
            sweep_interval_seconds=_float("SWEEP_INTERVAL_SECONDS", cls.sweep_interval_seconds),
            max_pairing_attempts=_int("MAX_PAIRING_ATTEMPTS", cls.max_pairing_attempts),
            lockout_duration_seconds=_int("LOCKOUT_DURATION_SECONDS", cls.lockout_duration_seconds),
            max_code_attempts=_int("MAX_CODE_ATTEMPTS", cls.max_code_attempts),
            max_step_reprompts=int(reprompts) if reprompts else None,
            callback_delay_seconds=_float("CALLBACK_DELAY_SECONDS", cls.callback_delay_seconds),
            call_state_ttl_seconds=_float("CALL_STATE_TTL_SECONDS", cls.call_state_ttl_seconds),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def validate_config(settings: Settings | None = None) -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any variable the selected dialer
    needs is missing or empty.  Logs warnings for missing optional variables.
    """
    settings = settings or get_settings()
    required = REQUIRED_VARS.get(settings.dialer)
    if required is None:
        print(
            f"\nFATAL: DIALER must be one of {', '.join(sorted(REQUIRED_VARS))}, "
            f"got {settings.dialer!r}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    missing = [var for var in required if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or your host's secret store (production).\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)
