from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError

from .config import VerifierConfig
from .exceptions import VerificationFailed
from .http_utils import join_url, normalize_http_proxies, parse_retry_after, token_fingerprint
from .limiter import TokenBucketLimiter
from .models import (
    RefreshedToken,
    RefreshResult,
    VerificationError,
    VerificationErrorKind,
    VerifiedAccountData,
    VerifyRequest,
    VerifyResult,
)

JSON_DECODE_STATUS = 598
NETWORK_ERROR_STATUS = 599
DEFAULT_FAILURE_MESSAGE = "Verification failed"

_INVALID_STATUS_CODES = {401, 403}
_INVALID_CODES = {
    "INVALID_GRANT",
    "INVALID_TOKEN",
    "INVALID_CLIENT",
    "UNAUTHORIZED",
    "UNAUTHORIZED_CLIENT",
    "ACCESS_DENIED",
    "FORBIDDEN",
    "ACCOUNT_SUSPENDED",
    "ACCOUNT_BANNED",
    "BANNED",
}
_INVALID_MARKERS = (
    "invalid_grant",
    "invalid grant",
    "invalid refresh token",
    "invalid token",
    "invalid credential",
    "bad credentials",
    "unauthorized",
    "forbidden",
    "suspended",
    "banned",
    "locked",
)
_RATE_LIMIT_CODES = {"RATE_LIMITED", "RATE_LIMIT", "THROTTLED", "THROTTLING_EXCEPTION", "TOO_MANY_REQUESTS"}
_RATE_LIMIT_MARKERS = ("rate limit", "rate-limit", "too many requests", "throttl")

logger = logging.getLogger(__name__)

ResultT = Union[VerifyResult, RefreshResult]


def _error_text(error: Any) -> tuple[str, str]:
    """Normalize an upstream error payload (object or bare string) into (message, code)."""

    if error is None:
        return "", ""
    if isinstance(error, dict):
        message = error.get("message") or error.get("error_description") or error.get("detail") or ""
        code = error.get("code") or error.get("errorType") or error.get("error") or ""
        if not message and isinstance(error.get("error"), str):
            message = error["error"]
        return str(message).strip(), str(code).strip().upper()
    return str(error).strip(), ""


def classify_failure(
    status_code: int,
    payload: Any = None,
    headers: Optional[dict] = None,
    detail: str = "",
) -> VerificationError:
    """Map a failed verifier exchange onto a tagged error, once, at the client boundary."""

    error_payload = payload.get("error") if isinstance(payload, dict) else payload
    message, code = _error_text(error_payload)
    if not message and isinstance(payload, dict):
        message = str(payload.get("message") or "").strip()
    lowered = message.lower()

    if status_code == NETWORK_ERROR_STATUS:
        return VerificationError(
            VerificationErrorKind.NETWORK_ERROR,
            detail or message or "Network error",
            status_code=None,
        )
    if status_code == JSON_DECODE_STATUS:
        return VerificationError(
            VerificationErrorKind.NETWORK_ERROR,
            "Verifier returned an undecodable response",
            status_code=JSON_DECODE_STATUS,
        )

    if status_code == 429 or code in _RATE_LIMIT_CODES or any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return VerificationError(
            VerificationErrorKind.RATE_LIMITED,
            message or "Rate limited by verifier",
            status_code=status_code,
            retry_after_s=parse_retry_after(headers),
        )
    if (
        status_code in _INVALID_STATUS_CODES
        or code in _INVALID_CODES
        or any(marker in lowered for marker in _INVALID_MARKERS)
    ):
        return VerificationError(
            VerificationErrorKind.INVALID_CREDENTIAL,
            message or "Credential rejected",
            status_code=status_code,
        )
    if 500 <= status_code < 600:
        return VerificationError(
            VerificationErrorKind.NETWORK_ERROR,
            message or f"Verifier unavailable (HTTP {status_code})",
            status_code=status_code,
        )
    return VerificationError(
        VerificationErrorKind.UNKNOWN,
        message or detail or DEFAULT_FAILURE_MESSAGE,
        status_code=status_code,
    )


class VerifierClient:
    """Client for the remote account-verification API.

    `verify` exchanges a refresh token for live tokens plus subscription/usage
    snapshots; `refresh` only mints a new access token. Both return tagged
    results instead of raising, and classify every failure into
    invalid_credential / rate_limited / network_error / unknown. Retries (off by
    default) apply only to retryable kinds.
    """

    def __init__(
        self,
        config: Optional[VerifierConfig] = None,
        *,
        session_factory: Optional[Callable[[], Any]] = None,
        limiter: Optional[TokenBucketLimiter] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.config = config or VerifierConfig()
        self._http_proxies = normalize_http_proxies(self.config.proxy)
        self.session_factory = session_factory or self._build_default_session_factory()
        self.limiter = (
            limiter
            if limiter is not None
            else TokenBucketLimiter.from_rate(self.config.requests_per_min, self.config.min_delay_s)
        )
        self._sleep = sleep or asyncio.sleep

    @property
    def verify_url(self) -> str:
        return join_url(self.config.base_url, self.config.verify_path)

    @property
    def refresh_url(self) -> str:
        return join_url(self.config.base_url, self.config.refresh_path)

    def _build_default_session_factory(self):
        from curl_cffi.requests import AsyncSession as CurlAsyncSession

        def _factory():
            kwargs: dict[str, Any] = {"timeout": self.config.timeout_s}
            if self.config.impersonate:
                kwargs["impersonate"] = self.config.impersonate
            if self._http_proxies:
                kwargs["proxies"] = self._http_proxies
            return CurlAsyncSession(**kwargs)

        return _factory

    # -- public API ------------------------------------------------------

    async def verify(self, request: VerifyRequest) -> VerifyResult:
        return await self._with_retries("verify", request, self._verify_once)

    async def refresh(self, request: VerifyRequest) -> RefreshResult:
        return await self._with_retries("refresh", request, self._refresh_once)

    async def verify_or_raise(self, request: VerifyRequest) -> VerifiedAccountData:
        result = await self.verify(request)
        if not result.ok or result.data is None:
            raise VerificationFailed(
                result.error or VerificationError(VerificationErrorKind.UNKNOWN, DEFAULT_FAILURE_MESSAGE)
            )
        return result.data

    # -- internals -------------------------------------------------------

    async def _with_retries(self, operation: str, request: VerifyRequest, once) -> ResultT:
        token_fp = token_fingerprint(request.refresh_token)
        attempts = max(1, int(self.config.max_attempts))
        result: ResultT
        for attempt in range(1, attempts + 1):
            if self.limiter is not None:
                await self.limiter.acquire()
            result = await once(request, token_fp)
            error = result.error
            if result.ok or error is None or not error.retryable or attempt >= attempts:
                return result
            delay_s = self._backoff_delay(attempt, error)
            logger.info(
                "Verifier %s retry token_fp=%s attempt=%s/%s kind=%s delay_s=%.2f",
                operation,
                token_fp,
                attempt,
                attempts,
                error.kind.value,
                delay_s,
            )
            await self._sleep(delay_s)
        return result

    def _backoff_delay(self, attempt: int, error: VerificationError) -> float:
        if error.retry_after_s is not None:
            return min(float(self.config.retry_max_s), float(error.retry_after_s))
        delay = float(self.config.retry_base_s) * (2 ** (attempt - 1))
        return min(float(self.config.retry_max_s), delay)

    async def _verify_once(self, request: VerifyRequest, token_fp: str) -> VerifyResult:
        payload, status, headers, detail = await self._post_json(self.verify_url, request.to_wire(), token_fp)
        data = self._success_data(status, payload)
        if data is None:
            error = classify_failure(status, payload, headers, detail)
            logger.warning(
                "Verifier verify failed token_fp=%s status=%s kind=%s detail=%s",
                token_fp,
                status,
                error.kind.value,
                error.message[:160],
            )
            return VerifyResult(error=error)
        try:
            verified = VerifiedAccountData.model_validate(data)
        except ValidationError as exc:
            logger.warning("Verifier verify malformed token_fp=%s errors=%s", token_fp, exc.error_count())
            return VerifyResult(
                error=VerificationError(
                    VerificationErrorKind.UNKNOWN,
                    "Malformed verification response",
                    status_code=status,
                )
            )
        logger.info("Verifier verify ok token_fp=%s email=%s", token_fp, verified.email or "-")
        return VerifyResult(data=verified)

    async def _refresh_once(self, request: VerifyRequest, token_fp: str) -> RefreshResult:
        payload, status, headers, detail = await self._post_json(self.refresh_url, request.to_wire(), token_fp)
        data = self._success_data(status, payload)
        if data is None:
            error = classify_failure(status, payload, headers, detail)
            logger.warning(
                "Verifier refresh failed token_fp=%s status=%s kind=%s detail=%s",
                token_fp,
                status,
                error.kind.value,
                error.message[:160],
            )
            return RefreshResult(error=error)
        try:
            refreshed = RefreshedToken.model_validate(data)
        except ValidationError:
            return RefreshResult(
                error=VerificationError(
                    VerificationErrorKind.UNKNOWN,
                    "Malformed refresh response",
                    status_code=status,
                )
            )
        logger.info("Verifier refresh ok token_fp=%s", token_fp)
        return RefreshResult(data=refreshed)

    @staticmethod
    def _success_data(status: int, payload: Any) -> Optional[dict[str, Any]]:
        if status != 200 or not isinstance(payload, dict):
            return None
        if payload.get("success") is False:
            return None
        data = payload.get("data")
        if not isinstance(data, dict):
            return None
        return data

    async def _post_json(self, url: str, body: dict[str, Any], token_fp: str):
        session = self.session_factory()
        try:
            try:
                response = await asyncio.wait_for(
                    self._session_post(session, url, json=body, timeout=self.config.timeout_s),
                    timeout=self.config.timeout_s,
                )
            except asyncio.TimeoutError:
                detail = f"Verification timed out after {self.config.timeout_s:g}s"
                logger.warning("Verifier request endpoint=%s token_fp=%s detail=%s", url, token_fp, detail)
                return None, NETWORK_ERROR_STATUS, {}, detail
            except Exception as exc:
                detail = f"{exc.__class__.__name__}: {exc}"
                logger.warning(
                    "Verifier request endpoint=%s status=%s token_fp=%s detail=%s",
                    url,
                    NETWORK_ERROR_STATUS,
                    token_fp,
                    detail[:200],
                )
                return None, NETWORK_ERROR_STATUS, {}, detail[:200]

            status = int(getattr(response, "status_code", 0) or 0)
            headers = dict(getattr(response, "headers", {}) or {})
            text_snippet = str(getattr(response, "text", "") or "")[:200]
            try:
                payload = await self._response_json(response)
            except Exception:
                if status == 200:
                    return None, JSON_DECODE_STATUS, headers, text_snippet
                payload = text_snippet or None
            logger.debug("Verifier request endpoint=%s status=%s token_fp=%s", url, status, token_fp)
            return payload, status, headers, text_snippet
        finally:
            await self._close_session(session)

    @staticmethod
    async def _session_post(session: Any, url: str, **kwargs):
        result = session.post(url, **kwargs)
        if inspect.isawaitable(result):
            return await result
        return result

    @staticmethod
    async def _response_json(response: Any):
        result = response.json()
        if inspect.isawaitable(result):
            return await result
        return result

    @staticmethod
    async def _close_session(session: Any) -> None:
        closer = getattr(session, "close", None)
        if closer is None:
            return
        maybe_awaitable = closer()
        if inspect.isawaitable(maybe_awaitable):
            await maybe_awaitable
