"""
FbrClient -- HTTP delivery of invoice payloads to the FBR DI API.

Responsibility:
    One POST per call, classified into exactly one of:

        FbrResult            2xx with a parseable body (accepted or not)
        FbrTransientError    timeout, connection failure, 408, 429, 5xx,
                             unparseable 2xx body
        FbrAuthError         401, 403, or no token configured
        FbrValidationError   any other 4xx

Architecture position:
    Outer layer.  Implements einvoice_kernel.domain.fbr_contract.FbrGateway.
    No persistence side effects; retries belong to the caller.
"""

import time
from typing import Any

import requests

from einvoice_fbr.config import DEFAULT_ENDPOINTS, FbrEndpoints
from einvoice_fbr.responses import extract_errors, parse_fbr_response
from einvoice_kernel.domain.fbr_contract import FbrResult
from einvoice_kernel.domain.invoice_lifecycle import IntegrationMode
from einvoice_kernel.exceptions import FbrAuthError, FbrTransientError, FbrValidationError
from einvoice_kernel.logging_config import get_logger

logger = get_logger("fbr.client")

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = "einvoice-core/0.1"

TRANSIENT_STATUSES = frozenset({408, 425, 429})
AUTH_STATUSES = frozenset({401, 403})


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        # HTTP-date form is not worth honouring here
        return None
    return seconds if seconds >= 0 else None


def _body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"text": response.text}


class FbrClient:
    """
    requests-based FbrGateway.

    A single ``requests.Session`` is shared across worker threads; it is only
    used for ``post`` and holds no per-call state.
    """

    def __init__(
        self,
        endpoints: FbrEndpoints = DEFAULT_ENDPOINTS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session | None = None,
    ):
        self._endpoints = endpoints
        self._timeout = timeout
        self._user_agent = user_agent
        self._session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings, session: requests.Session | None = None) -> "FbrClient":
        """Build from an einvoice_config FbrSettings."""
        endpoints = FbrEndpoints(
            base_url=settings.base_url,
            sandbox_submit=settings.sandbox_submit_path,
            production_submit=settings.production_submit_path,
            sandbox_validate=settings.sandbox_validate_path,
            production_validate=settings.production_validate_path,
        )
        return cls(
            endpoints=endpoints,
            timeout=settings.timeout_seconds,
            user_agent=settings.user_agent,
            session=session,
        )

    def submit(
        self,
        mode: IntegrationMode,
        token: str | None,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> FbrResult:
        """Post an invoice for recording.  See module docstring for outcomes."""
        return self._post(self._endpoints.submit_url(mode), mode, token, payload, idempotency_key)

    def validate(
        self,
        mode: IntegrationMode,
        token: str | None,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> FbrResult:
        """Dry-run validation; the authority records nothing."""
        return self._post(self._endpoints.validate_url(mode), mode, token, payload, idempotency_key)

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------

    def _post(
        self,
        url: str,
        mode: IntegrationMode,
        token: str | None,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> FbrResult:
        if not token:
            raise FbrAuthError(mode.value, {"error": "no token configured"}, None)

        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Idempotency-Key": idempotency_key,
            "User-Agent": self._user_agent,
        }
        started = time.monotonic()
        logger.info(
            "fbr_call_started",
            extra={"mode": mode.value, "url": url, "idempotency_key": idempotency_key},
        )

        try:
            response = self._session.post(url, json=payload, headers=headers, timeout=self._timeout)
        except requests.Timeout as exc:
            self._log_failure(mode, started, "timeout", None)
            raise FbrTransientError(f"timeout after {self._timeout}s") from exc
        except requests.ConnectionError as exc:
            self._log_failure(mode, started, "connection_error", None)
            raise FbrTransientError(f"connection error: {exc}") from exc
        except requests.RequestException as exc:
            self._log_failure(mode, started, "request_error", None)
            raise FbrTransientError(f"request error: {exc}") from exc

        return self._classify(response, mode, started)

    def _classify(
        self,
        response: requests.Response,
        mode: IntegrationMode,
        started: float,
    ) -> FbrResult:
        status = response.status_code
        body = _body(response)

        if status in AUTH_STATUSES:
            self._log_failure(mode, started, "auth", status)
            raise FbrAuthError(mode.value, body, status)

        if status in TRANSIENT_STATUSES or status >= 500:
            self._log_failure(mode, started, "transient_status", status)
            raise FbrTransientError(
                f"HTTP {status}",
                raw_response=body,
                status_code=status,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )

        if 400 <= status < 500:
            self._log_failure(mode, started, "validation", status)
            errors = extract_errors(body)
            message = "; ".join(e.message for e in errors) or f"HTTP {status}"
            raise FbrValidationError(message, errors, body, status)

        if not isinstance(body, dict) or set(body) == {"text"}:
            self._log_failure(mode, started, "unparseable_body", status)
            raise FbrTransientError(
                "unparseable response body", raw_response=body, status_code=status
            )

        normalized = parse_fbr_response(body)
        logger.info(
            "fbr_call_completed",
            extra={
                "mode": mode.value,
                "http_status": status,
                "accepted": normalized.accepted,
                "fbr_status_code": normalized.status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            },
        )
        return FbrResult(
            accepted=normalized.accepted,
            transmission_id=normalized.transmission_id,
            acknowledgment_number=normalized.acknowledgment_number,
            invoice_number=normalized.invoice_number,
            status_code=normalized.status_code,
            errors=normalized.errors,
            raw_response=body,
            http_status=status,
        )

    @staticmethod
    def _log_failure(mode: IntegrationMode, started: float, reason: str, status: int | None) -> None:
        logger.warning(
            "fbr_call_failed",
            extra={
                "mode": mode.value,
                "reason": reason,
                "http_status": status,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            },
        )
