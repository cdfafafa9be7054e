"""Browser-facing endpoints: session creation, status, and live updates."""

import logging
import uuid

from fastapi import APIRouter, HTTPException, Request, Response, WebSocket, WebSocketDisconnect

from callpair.models import utcnow
from callpair.store import CodeSpaceExhausted, iso

logger = logging.getLogger(__name__)

router = APIRouter()

BROWSER_COOKIE = "browserToken"
BROWSER_COOKIE_MAX_AGE = 24 * 60 * 60


@router.post("/api/session")
async def create_session(request: Request, response: Response):
    settings = request.app.state.settings
    token = request.cookies.get(BROWSER_COOKIE)
    if not token:
        token = str(uuid.uuid4())
        response.set_cookie(
            BROWSER_COOKIE,
            token,
            max_age=BROWSER_COOKIE_MAX_AGE,
            httponly=True,
            samesite="lax",
            secure=settings.base_url.startswith("https://"),
        )

    try:
        session = await request.app.state.store.create_session(token)
    except CodeSpaceExhausted:
        logger.error("Refusing new session: no pairing codes left")
        raise HTTPException(status_code=503, detail="No pairing codes available, try again shortly")

    return {
        "sessionId": session.id,
        "pairCode": session.pair_code,
        "expiresAt": iso(session.expires_at),
        "phoneNumber": settings.twilio_phone_number,
    }


@router.get("/api/session/{session_id}")
async def get_session(session_id: str, request: Request):
    summary = await request.app.state.store.session_summary(session_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return summary


@router.get("/api/health")
async def api_health(request: Request):
    return {
        "status": "ok",
        "timestamp": iso(utcnow()),
        "phoneNumber": request.app.state.settings.twilio_phone_number,
        "connectedClients": request.app.state.broadcaster.connected_clients(),
        "activeCalls": len(request.app.state.machine.registry),
    }


@router.post("/api/cleanup")
async def cleanup(request: Request):
    count = await request.app.state.store.sweep_expired()
    return {"expiredCount": count}


@router.websocket("/ws/session/{session_id}")
async def session_updates(websocket: WebSocket, session_id: str):
    broadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    broadcaster.subscribe(session_id, websocket)
    await websocket.send_json({"event": "subscribed", "data": {"sessionId": session_id}})
    try:
        while True:
            # Browsers only listen; reading keeps the socket open until they leave.
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Browser left session %s", session_id)
    finally:
        broadcaster.unsubscribe(session_id, websocket)
