import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import PlainTextResponse, Response

from callpair import api, retell_routes, twilio_routes
from callpair.broadcast import Broadcaster
from callpair.config import Settings, get_settings, validate_config
from callpair.db import create_engine, create_session_factory, init_db
from callpair.dialer import Dialer, create_dialer
from callpair.pipeline import create_pipeline
from callpair.rate_limit import RateLimiter
from callpair.session import CallRegistry
from callpair.state_machine import ConversationMachine
from callpair.store import SessionStore

load_dotenv()

logger = logging.getLogger(__name__)


async def run_maintenance(store: SessionStore, registry: CallRegistry, call_state_ttl: float) -> int:
    expired = await store.sweep_expired()
    registry.prune(call_state_ttl)
    return expired


async def sweep_loop(app: FastAPI):
    settings = app.state.settings
    while True:
        await asyncio.sleep(settings.sweep_interval_seconds)
        try:
            await run_maintenance(app.state.store, app.state.registry, settings.call_state_ttl_seconds)
        except Exception:
            logger.exception("Expiry sweep failed, retrying next interval")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db(app.state.engine)
    sweeper = asyncio.create_task(sweep_loop(app))
    logger.info(f"Server ready, dialer={app.state.settings.dialer}, base_url={app.state.settings.base_url}")
    try:
        yield
    finally:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
        await app.state.machine.shutdown()
        await app.state.dialer.close()
        await app.state.engine.dispose()


def create_app(settings: Settings | None = None, dialer: Dialer | None = None, clock=None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Call Pairing Demo", lifespan=lifespan)

    time_kwargs = {"clock": clock} if clock is not None else {}
    engine = create_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    store = SessionStore(
        session_factory,
        expiry_minutes=settings.session_expiry_minutes,
        paired_expiry_minutes=settings.paired_session_expiry_minutes,
        **time_kwargs,
    )
    rate_limiter = RateLimiter(
        session_factory,
        max_attempts=settings.max_pairing_attempts,
        lockout_seconds=settings.lockout_duration_seconds,
        **time_kwargs,
    )
    broadcaster = Broadcaster()
    registry = CallRegistry()
    dialer = dialer or create_dialer(settings)
    machine = ConversationMachine(
        store,
        rate_limiter,
        broadcaster,
        dialer,
        registry,
        max_code_attempts=settings.max_code_attempts,
        max_step_reprompts=settings.max_step_reprompts,
        callback_delay=settings.callback_delay_seconds,
        **time_kwargs,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.rate_limiter = rate_limiter
    app.state.broadcaster = broadcaster
    app.state.registry = registry
    app.state.dialer = dialer
    app.state.machine = machine

    app.include_router(api.router)
    app.include_router(twilio_routes.router)
    app.include_router(retell_routes.router)

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.api_route("/twiml", methods=["GET", "POST"])
    async def twiml(request: Request):
        """Serve TwiML that tells Twilio to open a media stream to this server."""
        host = settings.base_url.split("://", 1)[-1]
        xml = (
            '<Response>'
            '<Connect>'
            f'<Stream url="wss://{host}/ws/twilio" />'
            '</Connect>'
            '</Response>'
        )
        return Response(content=xml, media_type="application/xml")

    @app.websocket("/ws/twilio")
    async def twilio_websocket(websocket: WebSocket):
        await websocket.accept()
        await create_pipeline(websocket, machine, settings)

    return app


def main():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    validate_config(settings)
    uvicorn.run("callpair.bot:create_app", factory=True, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
