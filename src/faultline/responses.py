"""Response envelope builder.

Every response body goes through a per-request `ResponseEmitter`, which is
the only thing allowed to produce the outbound response. It emits once:
a second emit is a programming error (raised when strict, logged and
ignored otherwise).

Wire format::

    {"success": true, "data": ..., "message": "...", "meta": {...}}
    {"success": false, "message": "...",
     "error": {"code": "...", "type": "...", "details": {...}}, "meta": {...}}
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any, Literal

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.requests import HTTPConnection

from faultline.request_context import get_request_id
from faultline.service_errors import (
    GENERIC_SERVER_MESSAGE,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    MethodNotAllowedError,
    NotFoundError,
    RateLimitError,
    ResponseFacts,
    ServiceUnavailableError,
    ValidationError,
    error_type_for,
)

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class Meta(BaseModel):
    timestamp: str
    request_id: str


class ErrorDetail(BaseModel):
    code: str
    type: str
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    success: Literal[False] = False
    message: str
    error: ErrorDetail
    meta: Meta


class SuccessEnvelope(BaseModel):
    success: Literal[True] = True
    data: Any = None
    message: str = ""
    meta: Meta


class EnvelopeResponse(JSONResponse):
    media_type = "application/json; charset=utf-8"


class ResponseAlreadyEmitted(RuntimeError):
    """A second body write was attempted for a request that already has one."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def render_error(envelope: ErrorEnvelope) -> dict[str, Any]:
    body = envelope.model_dump()
    if body["error"]["details"] is None:
        del body["error"]["details"]
    return body


class ResponseEmitter:
    """Builds envelopes for one request and emits at most one of them."""

    def __init__(
        self,
        request_id: str,
        *,
        strict: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.request_id = request_id
        self.strict = strict
        self._clock = clock
        self._response: EnvelopeResponse | None = None

    @property
    def emitted(self) -> bool:
        return self._response is not None

    @property
    def response(self) -> EnvelopeResponse | None:
        return self._response

    def meta(self) -> Meta:
        return Meta(timestamp=format_timestamp(self._clock()), request_id=self.request_id)

    def emit(
        self,
        status: int,
        body: Mapping[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> EnvelopeResponse:
        if self._response is not None:
            if self.strict:
                raise ResponseAlreadyEmitted(
                    f"Response for request {self.request_id} was already emitted "
                    f"with status {self._response.status_code}"
                )
            logger.warning(
                "[%s] Dropping second response (status %s); already emitted %s",
                self.request_id,
                status,
                self._response.status_code,
            )
            return self._response
        self._response = EnvelopeResponse(
            content=dict(body), status_code=status, headers=dict(headers or {})
        )
        return self._response

    def success(self, data: Any = None, message: str = "", status: int = 200) -> EnvelopeResponse:
        envelope = SuccessEnvelope(data=jsonable_encoder(data), message=message, meta=self.meta())
        return self.emit(status, envelope.model_dump())

    def created(self, data: Any = None, message: str = "Resource created successfully") -> EnvelopeResponse:
        return self.success(data, message, 201)

    def error(
        self,
        message: str,
        code: str = "ERROR",
        status: int = 400,
        error_type: str | None = None,
        details: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> EnvelopeResponse:
        envelope = ErrorEnvelope(
            message=message,
            error=ErrorDetail(
                code=code,
                type=error_type or error_type_for(status),
                details=jsonable_encoder(dict(details)) if details is not None else None,
            ),
            meta=self.meta(),
        )
        return self.emit(status, render_error(envelope), headers)

    def emit_facts(self, facts: ResponseFacts) -> EnvelopeResponse:
        return self.error(
            facts.message,
            facts.code,
            facts.status,
            facts.error_type,
            facts.details,
            facts.headers,
        )

    def replace_for_failure(self, facts: ResponseFacts) -> EnvelopeResponse:
        """Emit `facts`, discarding a response built before the request failed.

        A built response has not reached the transport yet, so the failure
        wins. Only the exception translator should call this.
        """
        if self._response is not None:
            logger.warning(
                "[%s] Discarding unsent %s response; request failed with %s",
                self.request_id,
                self._response.status_code,
                facts.status,
            )
            self._response = None
        return self.emit_facts(facts)

    # Shorthands for handlers that answer directly instead of raising.

    def validation_error(self, errors: Mapping[str, Any], message: str = "") -> EnvelopeResponse:
        return self.emit_facts(ValidationError(errors, message).to_facts())

    def not_found(self, resource: str, identifier: Any = None) -> EnvelopeResponse:
        return self.emit_facts(NotFoundError(resource, identifier).to_facts())

    def unauthorized(self, message: str = "") -> EnvelopeResponse:
        return self.emit_facts(AuthenticationError(message).to_facts())

    def forbidden(self, permission: str = "") -> EnvelopeResponse:
        return self.emit_facts(AuthorizationError(permission).to_facts())

    def conflict(self, message: str, code: str = "CONFLICT") -> EnvelopeResponse:
        return self.emit_facts(ConflictError(message, code).to_facts())

    def method_not_allowed(self, allowed: Sequence[str] | str) -> EnvelopeResponse:
        return self.emit_facts(MethodNotAllowedError(allowed).to_facts())

    def rate_limited(self, retry_after: int = 60) -> EnvelopeResponse:
        return self.emit_facts(RateLimitError(retry_after).to_facts())

    def server_error(self, message: str = GENERIC_SERVER_MESSAGE) -> EnvelopeResponse:
        return self.error(message, "INTERNAL_ERROR", 500)

    def service_unavailable(self, message: str = "") -> EnvelopeResponse:
        return self.emit_facts(ServiceUnavailableError(message).to_facts())


def _strict_emit(conn: HTTPConnection) -> bool:
    app = conn.scope.get("app")
    settings = getattr(getattr(app, "state", None), "settings", None)
    return bool(getattr(settings, "strict_emit", False))


def get_emitter(conn: HTTPConnection) -> ResponseEmitter:
    """FastAPI dependency: the request's single ResponseEmitter."""
    emitter = getattr(conn.state, "emitter", None)
    if emitter is None:
        emitter = ResponseEmitter(get_request_id(conn), strict=_strict_emit(conn))
        conn.state.emitter = emitter
    return emitter
