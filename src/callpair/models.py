import uuid
from datetime import datetime, timezone
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC now; every stored timestamp uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_session_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    pass


class SessionStatus(str, Enum):
    CREATED = "created"
    PAIRED = "paired"
    ACTIVE = "active"
    EXPIRED = "expired"


LIVE_STATUSES = (SessionStatus.CREATED.value, SessionStatus.PAIRED.value, SessionStatus.ACTIVE.value)

# At most one live session per code and per browser. Rows past expires_at stay
# in these indexes until the sweep (or the next create) marks them expired.
_LIVE = sa.text("status IN ('created', 'paired', 'active')")


class Session(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        sa.Index("uq_sessions_live_pair_code", "pair_code", unique=True, sqlite_where=_LIVE, postgresql_where=_LIVE),
        sa.Index(
            "uq_sessions_live_browser_token", "browser_token",
            unique=True, sqlite_where=_LIVE, postgresql_where=_LIVE,
        ),
        sa.Index("ix_sessions_status_expires_at", "status", "expires_at"),
    )

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True, default=new_session_id)
    browser_token: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    pair_code: Mapped[str] = mapped_column(sa.String(4), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, default=SessionStatus.CREATED.value)

    caller_name: Mapped[str | None] = mapped_column(sa.String(100))
    # Inbound caller ID until a callback number is captured, then the callback number.
    caller_number: Mapped[str | None] = mapped_column(sa.String(20))
    call_leg_id: Mapped[str | None] = mapped_column(sa.String(64))

    created_at: Mapped[datetime] = mapped_column(sa.DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(sa.DateTime, nullable=False)
    active_until: Mapped[datetime | None] = mapped_column(sa.DateTime)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        sa.Index("ix_events_session_id_created_at", "session_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        sa.String(32), sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    value: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, nullable=False, default=utcnow)


class RateLimit(Base):
    __tablename__ = "rate_limits"

    caller_number: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    failed_attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime] = mapped_column(sa.DateTime, nullable=False, default=utcnow)
    locked_until: Mapped[datetime | None] = mapped_column(sa.DateTime)
