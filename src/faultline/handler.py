"""Exception translation: any failure in, exactly one error envelope out.

`ExceptionTranslator.handle()` is the single boundary where failures become
responses. For every failure it:

1. adapts framework and driver exceptions onto the taxonomy in
   `faultline.service_errors` (raw database errors become DatabaseFailure,
   anything unknown becomes UnclassifiedError);
2. writes one structured log entry, always, before classification;
3. resolves response facts (falling back to the generic 500 if that fails);
4. emits exactly once through the request's emitter, replacing any response
   the route built but never sent.

Outside debug mode the log entry is the only place raw internals appear.
"""

from __future__ import annotations

import asyncio
import http
import json
import logging
import traceback
from collections.abc import Mapping
from typing import Any, Protocol

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import HTTPConnection
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from faultline.config import Settings
from faultline.db_errors import MYSQL_RULES, DatabaseRules, database_failure_from
from faultline.request_context import RequestContext, RequestContextMiddleware
from faultline.responses import ResponseEmitter, get_emitter
from faultline.service_errors import (
    GENERIC_SERVER_MESSAGE,
    AuthenticationError,
    AuthorizationError,
    BadRequestError,
    ConflictError,
    DatabaseFailure,
    MethodNotAllowedError,
    NotFoundError,
    RateLimitError,
    ResponseFacts,
    ServiceError,
    ServiceUnavailableError,
    UnclassifiedError,
    ValidationError,
    code_from_text,
)

logger = logging.getLogger(__name__)

# Location segments FastAPI prefixes onto validation error locs.
_LOC_SOURCES = frozenset({"body", "query", "path", "header", "cookie"})


class LogSink(Protocol):
    def write(
        self,
        request_id: str,
        level: int,
        message: str,
        context: Mapping[str, Any],
        exc_info: BaseException | None = None,
    ) -> None: ...


class LoggingSink:
    """Default sink: one line per failure through stdlib logging."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def write(
        self,
        request_id: str,
        level: int,
        message: str,
        context: Mapping[str, Any],
        exc_info: BaseException | None = None,
    ) -> None:
        self._log.log(
            level,
            "[%s] %s context=%s",
            request_id,
            message,
            json.dumps(dict(context), default=str, sort_keys=True),
            exc_info=exc_info,
            extra={"request_id": request_id, "failure_context": dict(context)},
        )


def describe(exc: BaseException) -> str:
    """str(exc), or a placeholder when the exception cannot render itself."""
    try:
        return str(exc)
    except Exception:
        return f"<unprintable {type(exc).__name__}>"


def source_location(exc: BaseException) -> tuple[str, int]:
    """File and line where `exc` was raised, or ('<unknown>', 0) if it never was."""
    frames = traceback.extract_tb(exc.__traceback__) if exc.__traceback__ else []
    if not frames:
        return "<unknown>", 0
    last = frames[-1]
    return last.filename, last.lineno or 0


def _default_detail(status: int, detail: Any) -> str:
    if not isinstance(detail, str) or not detail:
        return ""
    try:
        if detail == http.HTTPStatus(status).phrase:
            return ""
    except ValueError:
        pass
    return detail


def from_http_exception(exc: StarletteHTTPException) -> ServiceError:
    """Fold a framework HTTPException onto the taxonomy."""
    status = exc.status_code
    detail = _default_detail(status, exc.detail)
    headers = exc.headers or {}
    if status == 400:
        return BadRequestError(detail)
    if status == 401:
        return AuthenticationError(detail)
    if status == 403:
        return AuthorizationError(message=detail)
    if status == 404:
        return NotFoundError("Resource", message=detail)
    if status == 405:
        return MethodNotAllowedError(headers.get("Allow", headers.get("allow", "")))
    if status == 409:
        return ConflictError(detail)
    if status == 422:
        return ValidationError(message=detail)
    if status == 429:
        retry_after = headers.get("Retry-After", headers.get("retry-after", "60"))
        return RateLimitError(int(retry_after) if str(retry_after).isdigit() else 60, detail)
    if status == 503:
        return ServiceUnavailableError(detail)
    if 400 <= status < 500:
        try:
            phrase = http.HTTPStatus(status).phrase
        except ValueError:
            phrase = ""
        return BadRequestError(detail or phrase, code_from_text(phrase) or "BAD_REQUEST")
    return UnclassifiedError(detail=f"HTTP {status}: {exc.detail}", origin=exc)


def from_request_validation(exc: RequestValidationError) -> ServiceError:
    """Invalid JSON -> 400 INVALID_JSON, only-missing -> 400, otherwise 422 with field map."""
    errors = list(exc.errors())
    for err in errors:
        if err.get("type") == "json_invalid":
            reason = (err.get("ctx") or {}).get("error") or err.get("msg") or "malformed body"
            return BadRequestError(f"Invalid JSON: {reason}", "INVALID_JSON")

    fields: dict[str, str] = {}
    missing: list[str] = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ())]
        if loc and loc[0] in _LOC_SOURCES:
            loc = loc[1:]
        name = ".".join(loc) or "body"
        fields.setdefault(name, str(err.get("msg", "Invalid value")))
        if err.get("type") == "missing":
            missing.append(name)

    if missing and len(missing) == len(errors):
        return BadRequestError(f"Missing required fields: {', '.join(missing)}", "MISSING_REQUIRED_FIELDS")
    return ValidationError(fields)


class ExceptionTranslator:
    """Turns any failure into one logged, emitted error envelope."""

    def __init__(
        self,
        *,
        debug: bool = False,
        rules: DatabaseRules = MYSQL_RULES,
        sink: LogSink | None = None,
    ) -> None:
        self.debug = debug
        self.rules = rules
        self.sink: LogSink = sink or LoggingSink()

    def adapt(self, exc: BaseException) -> ServiceError:
        database_failure = database_failure_from(exc)
        if database_failure is not None:
            return database_failure
        if isinstance(exc, ServiceError):
            return exc
        if isinstance(exc, StarletteHTTPException):
            return from_http_exception(exc)
        if isinstance(exc, RequestValidationError):
            return from_request_validation(exc)
        if isinstance(exc, asyncio.CancelledError):
            return ServiceUnavailableError("Request was cancelled before it completed")
        return UnclassifiedError(detail=describe(exc), origin=exc)

    def record(self, exc: BaseException, failure: ServiceError, ctx: RequestContext) -> None:
        """Write the per-failure log entry. Never raises."""
        filename, lineno = source_location(exc)
        internal = isinstance(failure, (DatabaseFailure, UnclassifiedError))
        context = dict(ctx.as_log_context())
        context.update(
            variant=failure.variant,
            exception=type(exc).__name__,
            source=f"{filename}:{lineno}",
        )
        if isinstance(failure, DatabaseFailure):
            context.update(sqlstate=failure.state, engine_code=failure.engine_code)
        message = f"{type(exc).__name__}: {describe(exc)} in {filename}:{lineno}"
        try:
            self.sink.write(
                ctx.request_id,
                logging.ERROR if internal else logging.WARNING,
                message,
                context,
                exc_info=exc if internal or self.debug else None,
            )
        except Exception:
            logger.warning("[%s] Log sink failed for %s", ctx.request_id, type(exc).__name__, exc_info=True)

    def unclassified_facts(self, exc: BaseException) -> ResponseFacts:
        message = GENERIC_SERVER_MESSAGE
        if self.debug:
            origin = exc.origin if isinstance(exc, UnclassifiedError) and exc.origin else exc
            text = exc.detail if isinstance(exc, UnclassifiedError) and exc.detail else describe(origin)
            filename, lineno = source_location(origin)
            message = f"{text} in {filename}:{lineno}"
        return ResponseFacts(status=500, code="INTERNAL_ERROR", message=message)

    def resolve(self, failure: ServiceError) -> ResponseFacts:
        try:
            if isinstance(failure, UnclassifiedError):
                return self.unclassified_facts(failure)
            if isinstance(failure, DatabaseFailure):
                return failure.to_facts(self.rules)
            return failure.to_facts()
        except Exception:
            logger.exception("Could not resolve response facts for %s", type(failure).__name__)
            return self.unclassified_facts(failure)

    def handle(self, exc: BaseException, ctx: RequestContext, emitter: ResponseEmitter) -> Response:
        try:
            failure = self.adapt(exc)
        except Exception:
            logger.exception("Could not adapt %s", type(exc).__name__)
            failure = UnclassifiedError(detail=describe(exc), origin=exc)
        self.record(exc, failure, ctx)
        return emitter.replace_for_failure(self.resolve(failure))

    def handle_request(self, conn: HTTPConnection, exc: BaseException) -> Response:
        return self.handle(exc, RequestContext.from_request(conn), get_emitter(conn))


class ErrorBoundaryMiddleware:
    """Catches whatever escapes the routing layer and translates it.

    Nothing is written if the response has already started; the failure is
    logged instead so the client never receives two bodies. A cancelled
    request still gets a best-effort 503 before the cancellation propagates.
    """

    def __init__(self, app: ASGIApp, translator: ExceptionTranslator) -> None:
        self.app = app
        self.translator = translator

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, tracking_send)
        except asyncio.CancelledError as exc:
            if not response_started:
                await self._best_effort(scope, receive, send, exc)
            raise
        except Exception as exc:
            conn = HTTPConnection(scope)
            if response_started:
                logger.error(
                    "[%s] %s raised after the response started; no error body written",
                    RequestContext.from_request(conn).request_id,
                    type(exc).__name__,
                    exc_info=exc,
                )
                return
            response = self.translator.handle_request(conn, exc)
            await response(scope, receive, send)

    async def _best_effort(self, scope: Scope, receive: Receive, send: Send, exc: BaseException) -> None:
        try:
            response = self.translator.handle_request(HTTPConnection(scope), exc)
            await response(scope, receive, send)
        except Exception:
            logger.warning("Could not emit a response for a cancelled request", exc_info=True)


def install_error_handling(
    app: FastAPI,
    settings: Settings,
    *,
    sink: LogSink | None = None,
) -> ExceptionTranslator:
    """Route every failure raised while serving `app` through one translator."""
    translator = ExceptionTranslator(debug=settings.debug, rules=settings.database_rules(), sink=sink)
    app.state.settings = settings
    app.state.translator = translator

    async def _translate(request: Request, exc: Exception) -> Response:
        return translator.handle_request(request, exc)

    app.add_exception_handler(ServiceError, _translate)
    app.add_exception_handler(StarletteHTTPException, _translate)
    app.add_exception_handler(RequestValidationError, _translate)

    # Last added is outermost: the request id must exist before the boundary runs.
    app.add_middleware(ErrorBoundaryMiddleware, translator=translator)
    app.add_middleware(RequestContextMiddleware)
    return translator
