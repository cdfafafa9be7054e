"""Durable session records and their append-only event log.

Every lifecycle transition that could race (pairing, expiry) is a single
conditional UPDATE keyed on the current status, so the database decides the
winner: two callers claiming the same code cannot both succeed, and the sweep
can never expire a session whose expiry was just pushed forward. Creation
leans on unique indexes over live sessions instead.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callpair.models import (
    LIVE_STATUSES,
    Event,
    Session,
    SessionStatus,
    utcnow,
)
from callpair.normalizer import mask_phone

logger = logging.getLogger(__name__)

MAX_CODE_DRAWS = 100
SUMMARY_EVENT_LIMIT = 20


class CodeSpaceExhausted(RuntimeError):
    """Every pairing-code draw collided with a live session."""


class SessionNotFound(LookupError):
    pass


def random_pair_code() -> str:
    return f"{secrets.randbelow(10_000):04d}"


def iso(ts: datetime | None) -> str | None:
    return f"{ts.isoformat()}Z" if ts else None


class SessionStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        expiry_minutes: int = 10,
        paired_expiry_minutes: int = 30,
        max_code_draws: int = MAX_CODE_DRAWS,
        clock: Callable[[], datetime] = utcnow,
        code_generator: Callable[[], str] = random_pair_code,
    ):
        self._db = session_factory
        self.expiry = timedelta(minutes=expiry_minutes)
        self.paired_expiry = timedelta(minutes=paired_expiry_minutes)
        self.max_code_draws = max_code_draws
        self._clock = clock
        self._generate_code = code_generator

    # ── Creation ──

    async def create_session(self, browser_token: str) -> Session:
        """Return this browser's live session, or create one with a fresh code.

        The partial unique indexes on live sessions settle concurrent creates:
        the loser of a race rolls back and looks again, and the draws it spent
        count against ``max_code_draws``.
        """
        draws = self.max_code_draws
        while True:
            now = self._clock()
            try:
                async with self._db() as db, db.begin():
                    existing = await self._live_session_for(db, browser_token, now)
                    if existing is not None:
                        return existing
                    code, draws = await self._draw_code(db, now, draws)
                    row = Session(
                        browser_token=browser_token,
                        pair_code=code,
                        status=SessionStatus.CREATED.value,
                        created_at=now,
                        expires_at=now + self.expiry,
                    )
                    db.add(row)
            except IntegrityError as e:
                logger.info("Session insert lost a race, retrying: %s", e.orig)
                continue
            break

        logger.info("Session %s created, expires %s", row.id, iso(row.expires_at))
        return row

    async def _live_session_for(self, db: AsyncSession, browser_token: str, now: datetime) -> Session | None:
        # Past-deadline rows still hold their index slot until marked expired.
        await db.execute(
            update(Session)
            .where(
                Session.browser_token == browser_token,
                Session.status.in_(LIVE_STATUSES),
                Session.expires_at <= now,
            )
            .values(status=SessionStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        return await db.scalar(
            select(Session)
            .where(Session.browser_token == browser_token, Session.status.in_(LIVE_STATUSES))
            .limit(1)
        )

    async def _draw_code(self, db: AsyncSession, now: datetime, draws: int) -> tuple[str, int]:
        """Draw until a code is free; returns it with the draws left."""
        while draws > 0:
            draws -= 1
            code = self._generate_code()
            holder = await db.scalar(
                select(Session)
                .where(Session.pair_code == code, Session.status.in_(LIVE_STATUSES))
                .limit(1)
            )
            if holder is None:
                return code, draws
            if holder.expires_at <= now:
                holder.status = SessionStatus.EXPIRED.value
                await db.flush()
                return code, draws
        logger.error("Pairing code space exhausted after %d draws", self.max_code_draws)
        raise CodeSpaceExhausted(f"no free pairing code after {self.max_code_draws} draws")

    # ── Reads ──

    async def get_session(self, session_id: str) -> Session | None:
        """Fetch a session, expiring it first if its deadline has passed."""
        now = self._clock()
        async with self._db() as db, db.begin():
            row = await db.get(Session, session_id)
            if row is not None and row.status in LIVE_STATUSES and row.expires_at <= now:
                row.status = SessionStatus.EXPIRED.value
                logger.info("Session %s expired on read", session_id)
        return row

    async def find_session_by_code(self, code: str) -> Session | None:
        """Only unpaired, unexpired sessions answer to their code."""
        now = self._clock()
        async with self._db() as db:
            return await db.scalar(
                select(Session)
                .where(
                    Session.pair_code == code,
                    Session.status == SessionStatus.CREATED.value,
                    Session.expires_at > now,
                )
                .limit(1)
            )

    async def list_events(self, session_id: str, limit: int = SUMMARY_EVENT_LIMIT) -> list[Event]:
        async with self._db() as db:
            rows = await db.scalars(
                select(Event)
                .where(Event.session_id == session_id)
                .order_by(Event.created_at.desc(), Event.id.desc())
                .limit(limit)
            )
            return list(rows)

    async def callback_leg_ids(self, session_id: str) -> set[str]:
        """Ids of the outbound legs dialed for this session."""
        async with self._db() as db:
            values = await db.scalars(
                select(Event.value).where(Event.session_id == session_id, Event.type == "callback_initiated")
            )
            return {v.get("callLegId") for v in values if v.get("callLegId")}

    async def session_summary(self, session_id: str) -> dict | None:
        row = await self.get_session(session_id)
        if row is None:
            return None
        events = await self.list_events(session_id)
        return {
            "id": row.id,
            "status": row.status,
            "pairCode": row.pair_code,
            "expiresAt": iso(row.expires_at),
            "activeUntil": iso(row.active_until),
            "callerName": row.caller_name,
            "callerNumber": mask_phone(row.caller_number) if row.caller_number else None,
            "events": [
                {"type": e.type, "value": e.value, "createdAt": iso(e.created_at)}
                for e in events
            ],
        }

    # ── Transitions ──

    async def pair_session(
        self,
        session_id: str,
        caller_number: str,
        caller_name: str,
        call_leg_id: str,
    ) -> Session | None:
        """created -> paired. Returns None when the session is no longer claimable."""
        now = self._clock()
        until = now + self.paired_expiry
        async with self._db() as db, db.begin():
            result = await db.execute(
                update(Session)
                .where(
                    Session.id == session_id,
                    Session.status == SessionStatus.CREATED.value,
                    Session.expires_at > now,
                )
                .values(
                    status=SessionStatus.PAIRED.value,
                    caller_number=caller_number,
                    caller_name=caller_name,
                    call_leg_id=call_leg_id,
                    active_until=until,
                    expires_at=until,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning("Session %s was not claimable (already paired or expired)", session_id)
                return None
            db.add(Event(
                session_id=session_id,
                type="paired",
                value={
                    "callerName": caller_name,
                    "callerNumber": mask_phone(caller_number),
                    "timestamp": iso(now),
                },
                created_at=now,
            ))
            row = await db.get(Session, session_id, populate_existing=True)

        logger.info("Session %s paired with call %s", session_id, call_leg_id)
        return row

    async def activate_session(self, session_id: str) -> bool:
        """paired -> active, once the callback leg is live."""
        async with self._db() as db, db.begin():
            result = await db.execute(
                update(Session)
                .where(Session.id == session_id, Session.status == SessionStatus.PAIRED.value)
                .values(status=SessionStatus.ACTIVE.value)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def extend_session(self, session_id: str) -> bool:
        now = self._clock()
        until = now + self.paired_expiry
        async with self._db() as db, db.begin():
            result = await db.execute(
                update(Session)
                .where(
                    Session.id == session_id,
                    Session.status.in_(LIVE_STATUSES),
                    Session.expires_at > now,
                )
                .values(active_until=until, expires_at=until)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            logger.warning("Could not extend session %s (missing or expired)", session_id)
            return False
        return True

    async def update_session_phone(self, session_id: str, number: str) -> None:
        # Overwrites the inbound caller ID; callers see one "phone" field.
        async with self._db() as db, db.begin():
            result = await db.execute(
                update(Session)
                .where(Session.id == session_id)
                .values(caller_number=number)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            raise SessionNotFound(session_id)

    async def expire_session(self, session_id: str) -> bool:
        async with self._db() as db, db.begin():
            result = await db.execute(
                update(Session)
                .where(Session.id == session_id, Session.status.in_(LIVE_STATUSES))
                .values(status=SessionStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def append_event(self, session_id: str, type: str, payload: dict) -> Event:
        now = self._clock()
        async with self._db() as db, db.begin():
            if await db.get(Session, session_id) is None:
                raise SessionNotFound(session_id)
            event = Event(session_id=session_id, type=type, value=payload, created_at=now)
            db.add(event)
        return event

    async def sweep_expired(self) -> int:
        now = self._clock()
        async with self._db() as db, db.begin():
            result = await db.execute(
                update(Session)
                .where(Session.status.in_(LIVE_STATUSES), Session.expires_at < now)
                .values(status=SessionStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
        count = result.rowcount or 0
        if count:
            logger.info("Expired %d sessions", count)
        return count
