"""Outbound call triggers.

Both dialers place the demo callback and return the provider's id for the
new call leg. Status updates for that leg arrive later through the
transport routes, not through these clients.
"""

import logging

import httpx

from callpair.circuit_breaker import CircuitBreaker
from callpair.config import Settings
from callpair.normalizer import mask_phone

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com"
RETELL_API_BASE = "https://api.retellai.com"
STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


class DialerError(RuntimeError):
    """The callback could not be placed."""


class Dialer:
    """Base for outbound call triggers sharing one httpx client and breaker."""

    name = "dialer"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        auth: tuple[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ):
        # URL and credentials go on every request, so an injected client needs neither.
        self.base_url = base_url
        self._auth = auth
        self._headers = headers or {}
        self._circuit = CircuitBreaker(failure_threshold=3, cooldown_seconds=60.0, label=self.name)
        self._client = client if client is not None else httpx.AsyncClient(timeout=timeout)

    async def close(self):
        await self._client.aclose()

    async def place_call(self, to_number: str, session_id: str, caller_name: str) -> str:
        if not self._circuit.should_try():
            logger.warning("%s circuit breaker open, not dialing %s", self.name, mask_phone(to_number))
            raise DialerError(f"{self.name} unavailable")
        try:
            call_id = await self._create_call(to_number, session_id, caller_name)
        except (httpx.HTTPError, KeyError, ValueError) as e:
            self._circuit.record_failure()
            logger.error("%s place_call to %s failed: %s", self.name, mask_phone(to_number), e)
            raise DialerError(str(e)) from e
        self._circuit.record_success()
        logger.info("%s callback %s placed to %s", self.name, call_id, mask_phone(to_number))
        return call_id

    async def _create_call(self, to_number: str, session_id: str, caller_name: str) -> str:
        raise NotImplementedError

    async def _post(self, path: str, **kwargs) -> httpx.Response:
        resp = await self._client.post(f"{self.base_url}{path}", auth=self._auth, headers=self._headers, **kwargs)
        resp.raise_for_status()
        return resp


class TwilioDialer(Dialer):
    name = "twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        public_base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.account_sid = account_sid
        self.from_number = from_number
        self.public_base_url = public_base_url.rstrip("/")
        super().__init__(TWILIO_API_BASE, timeout=timeout, client=client, auth=(account_sid, auth_token))

    async def _create_call(self, to_number: str, session_id: str, caller_name: str) -> str:
        resp = await self._post(
            f"/2010-04-01/Accounts/{self.account_sid}/Calls.json",
            data={
                "To": to_number,
                "From": self.from_number,
                "Url": f"{self.public_base_url}/twilio/callback-answer?sessionId={session_id}",
                "StatusCallback": f"{self.public_base_url}/twilio/callback-status?sessionId={session_id}",
                "StatusCallbackEvent": STATUS_CALLBACK_EVENTS,
                "StatusCallbackMethod": "POST",
            },
        )
        return resp.json()["sid"]


class RetellDialer(Dialer):
    name = "retell"

    def __init__(
        self,
        api_key: str,
        agent_id: str,
        from_number: str,
        callback_agent_id: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.agent_id = callback_agent_id or agent_id
        self.from_number = from_number
        super().__init__(
            RETELL_API_BASE,
            timeout=timeout,
            client=client,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        )

    async def _create_call(self, to_number: str, session_id: str, caller_name: str) -> str:
        resp = await self._post(
            "/v2/create-phone-call",
            json={
                "agent_id": self.agent_id,
                "to_number": to_number,
                "from_number": self.from_number,
                "metadata": {"sessionId": session_id, "callerName": caller_name},
                "retell_llm_dynamic_variables": {
                    "caller_name": caller_name,
                    "session_id": session_id,
                },
            },
        )
        return resp.json()["call_id"]


def create_dialer(settings: Settings) -> Dialer:
    if settings.dialer == "retell":
        return RetellDialer(
            api_key=settings.retell_api_key,
            agent_id=settings.retell_agent_id,
            callback_agent_id=settings.retell_callback_agent_id,
            from_number=settings.twilio_phone_number,
        )
    return TwilioDialer(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_phone_number,
        public_base_url=settings.base_url,
    )
