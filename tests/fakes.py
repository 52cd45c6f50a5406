"""In-process stand-ins for the verifier API and its HTTP sessions."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from Credpool.core.models import (
    RefreshedToken,
    RefreshResult,
    VerificationError,
    VerificationErrorKind,
    VerifiedAccountData,
    VerifyRequest,
    VerifyResult,
)


def verified(email: str, **extra: Any) -> VerifiedAccountData:
    payload: dict[str, Any] = {
        "email": email,
        "userId": f"uid-{email}",
        "accessToken": f"at-{email}",
        "refreshToken": f"rt-rotated-{email}",
        "expiresIn": 3600,
        "subscriptionTitle": "KIRO PRO",
        "usage": {"current": 10, "limit": 100},
    }
    payload.update(extra)
    return VerifiedAccountData.model_validate(payload)


class FakeVerifier:
    """Stands in for VerifierClient.

    Outcomes are keyed by refresh token: a VerifiedAccountData / RefreshedToken,
    a VerificationError, or an Exception to raise. Unscripted tokens verify to
    `<token>@example.com`.
    """

    def __init__(self, outcomes: Optional[dict[str, Any]] = None, *, delays: Optional[dict[str, float]] = None):
        self.outcomes = dict(outcomes or {})
        self.delays = dict(delays or {})
        self.calls: list[VerifyRequest] = []
        self.refresh_calls: list[VerifyRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.events: list[str] = []

    async def _enter(self, request: VerifyRequest) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.events.append(f"start:{request.refresh_token}")
        try:
            await asyncio.sleep(self.delays.get(request.refresh_token, 0))
        finally:
            self.in_flight -= 1
            self.events.append(f"end:{request.refresh_token}")

    async def verify(self, request: VerifyRequest) -> VerifyResult:
        self.calls.append(request)
        await self._enter(request)
        outcome = self.outcomes.get(request.refresh_token)
        if outcome is None:
            return VerifyResult(data=verified(f"{request.refresh_token}@example.com"))
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, VerificationError):
            return VerifyResult(error=outcome)
        return VerifyResult(data=outcome)

    async def refresh(self, request: VerifyRequest) -> RefreshResult:
        self.refresh_calls.append(request)
        await self._enter(request)
        outcome = self.outcomes.get(request.refresh_token)
        if outcome is None:
            return RefreshResult(
                data=RefreshedToken(access_token=f"fresh-{request.refresh_token}", expires_in=1800)
            )
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, VerificationError):
            return RefreshResult(error=outcome)
        return RefreshResult(data=outcome)


def invalid(message: str = "invalid_grant") -> VerificationError:
    return VerificationError(VerificationErrorKind.INVALID_CREDENTIAL, message, status_code=401)


def network(message: str = "Network error") -> VerificationError:
    return VerificationError(VerificationErrorKind.NETWORK_ERROR, message)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, *, headers: Optional[dict] = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    """Minimal curl_cffi AsyncSession stand-in fed from a shared script."""

    def __init__(self, script: list[Any], sent: list[dict[str, Any]], *, hang_s: float = 0.0):
        self._script = script
        self._sent = sent
        self._hang_s = hang_s
        self.closed = False

    async def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self._sent.append({"url": url, **kwargs})
        if self._hang_s:
            await asyncio.sleep(self._hang_s)
        item = self._script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class SessionRecorder:
    def __init__(self, *responses: Any, hang_s: float = 0.0):
        self.script = list(responses)
        self.sent: list[dict[str, Any]] = []
        self.sessions: list[FakeSession] = []
        self.hang_s = hang_s

    def __call__(self) -> FakeSession:
        session = FakeSession(self.script, self.sent, hang_s=self.hang_s)
        self.sessions.append(session)
        return session


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


