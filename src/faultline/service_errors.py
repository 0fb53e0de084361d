"""Domain exceptions for service layers.

Service modules raise these instead of fastapi.HTTPException so they
remain transport-agnostic. The HTTP layer hands every failure to the
exception translator (`faultline.handler`), which renders it as exactly
one error envelope.

The set of variants is closed: new failure kinds are added in this module,
never by subclassing ServiceError elsewhere. Concrete variants may still be
specialised by callers (e.g. ``class InvoiceNotFound(NotFoundError)``).
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from faultline.db_errors import DatabaseRules

STATUS_TYPES: dict[int, str] = {
    400: "bad_request",
    401: "auth_error",
    403: "authorization_error",
    404: "not_found_error",
    405: "method_error",
    409: "conflict_error",
    422: "validation_error",
    429: "rate_limit_error",
    500: "server_error",
    503: "service_error",
}

GENERIC_SERVER_MESSAGE = "An unexpected error occurred"
DEFAULT_RETRY_AFTER = 60


def error_type_for(status: int) -> str:
    """Return the `error.type` tag for a status code."""
    if status in STATUS_TYPES:
        return STATUS_TYPES[status]
    return "server_error" if status >= 500 else "bad_request"


def code_from_text(text: str) -> str:
    """Upper-snake a free-text label: 'Overpayment not allowed' -> 'OVERPAYMENT_NOT_ALLOWED'."""
    return re.sub(r"[^A-Z0-9]+", "_", text.upper()).strip("_")


@dataclass(frozen=True)
class ResponseFacts:
    """Everything the envelope builder needs to render one error response."""

    status: int
    code: str
    message: str
    details: Mapping[str, Any] | None = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def error_type(self) -> str:
        return error_type_for(self.status)


class ServiceError(Exception):
    """Base for all service-layer errors. Carries a status code, code and message."""

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"
    default_message: str = "Internal service error"

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if ServiceError in cls.__bases__ and cls.__module__ != __name__:
            raise TypeError(
                f"{cls.__name__} must extend one of the concrete ServiceError variants, "
                "not ServiceError itself"
            )

    def __init__(self, message: str = "", code: str = "") -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        super().__init__(self.message)

    @property
    def variant(self) -> str:
        """Name of the taxonomy variant this error belongs to."""
        for klass in type(self).__mro__:
            if ServiceError in klass.__bases__:
                return klass.__name__
        return ServiceError.__name__

    def to_facts(self) -> ResponseFacts:
        return ResponseFacts(status=self.status_code, code=self.code, message=self.message)


class ValidationError(ServiceError):
    """Field-level input errors (422). `errors` maps field name to message."""

    status_code: int = 422
    default_code: str = "VALIDATION_FAILED"
    default_message: str = "Validation failed"

    def __init__(self, errors: Mapping[str, Any] | None = None, message: str = "") -> None:
        self.errors: dict[str, Any] = dict(errors or {})
        super().__init__(message)

    def to_facts(self) -> ResponseFacts:
        return ResponseFacts(
            status=self.status_code,
            code=self.code,
            message=self.message,
            details=dict(self.errors),
        )


class AuthenticationError(ServiceError):
    status_code: int = 401
    default_code: str = "UNAUTHORIZED"
    default_message: str = "Authentication required"


class AuthorizationError(ServiceError):
    """The caller lacks a permission (403). Never says whether the target exists."""

    status_code: int = 403
    default_code: str = "PERMISSION_DENIED"
    default_message: str = "You do not have permission to perform this action"

    def __init__(self, permission: str = "", message: str = "") -> None:
        self.permission = permission
        if not message and permission:
            message = f"{self.default_message}. Required: {permission}"
        super().__init__(message)


class NotFoundError(ServiceError):
    status_code: int = 404

    def __init__(self, resource: str = "Resource", identifier: Any = None, message: str = "") -> None:
        self.resource = resource or "Resource"
        self.identifier = identifier
        if not message:
            if identifier is None or identifier == "":
                message = f"{self.resource} not found"
            else:
                message = f"{self.resource} with identifier '{identifier}' not found"
        code = f"{code_from_text(self.resource) or 'RESOURCE'}_NOT_FOUND"
        super().__init__(message, code)


class ConflictError(ServiceError):
    status_code: int = 409
    default_code: str = "CONFLICT"
    default_message: str = "Conflict"


class RateLimitError(ServiceError):
    status_code: int = 429
    default_code: str = "RATE_LIMIT_EXCEEDED"

    def __init__(self, retry_after: Any = 60, message: str = "") -> None:
        try:
            seconds = int(retry_after)
        except (TypeError, ValueError):
            seconds = DEFAULT_RETRY_AFTER
        self.retry_after = max(seconds, 0)
        message = message or f"Too many requests. Please try again in {self.retry_after} seconds."
        super().__init__(message)

    def to_facts(self) -> ResponseFacts:
        return ResponseFacts(
            status=self.status_code,
            code=self.code,
            message=self.message,
            headers={"Retry-After": str(self.retry_after)},
        )


class BadRequestError(ServiceError):
    status_code: int = 400
    default_code: str = "BAD_REQUEST"
    default_message: str = "Bad request"


class MethodNotAllowedError(ServiceError):
    status_code: int = 405
    default_code: str = "METHOD_NOT_ALLOWED"

    def __init__(self, allowed: Sequence[str] | str = ()) -> None:
        if isinstance(allowed, str):
            allowed = [m.strip() for m in allowed.split(",") if m.strip()]
        self.allowed = [m.upper() for m in allowed]
        methods = ", ".join(self.allowed)
        super().__init__(f"Method not allowed. Allowed methods: {methods}")

    def to_facts(self) -> ResponseFacts:
        return ResponseFacts(
            status=self.status_code,
            code=self.code,
            message=self.message,
            headers={"Allow": ", ".join(self.allowed)},
        )


class ServiceUnavailableError(ServiceError):
    status_code: int = 503
    default_code: str = "SERVICE_UNAVAILABLE"
    default_message: str = "Service temporarily unavailable"


class DatabaseFailure(ServiceError):
    """A database engine error surfaced by the persistence layer.

    `state` is the engine error-state (SQLSTATE), `engine_code` the vendor's
    numeric code if it has one. `vendor_message` is raw engine text: it is
    logged but never rendered; the client sees only what the extractor
    returns for it.
    """

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(self, state: str = "", engine_code: Any = None, vendor_message: str = "") -> None:
        self.state = (state or "").strip().upper()
        self.engine_code = engine_code
        self.vendor_message = vendor_message or ""
        super().__init__(self.vendor_message or "Database error occurred")

    def to_facts(self, rules: DatabaseRules | None = None) -> ResponseFacts:
        # Deferred import: db_errors builds DatabaseFailure instances.
        from faultline.db_errors import MYSQL_RULES, extract

        extracted = extract(self.state, self.vendor_message, rules or MYSQL_RULES)
        return ResponseFacts(status=extracted.status, code=extracted.code, message=extracted.message)


class UnclassifiedError(ServiceError):
    """Anything the taxonomy does not name. `detail` is internal only."""

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"
    default_message: str = GENERIC_SERVER_MESSAGE

    def __init__(self, detail: str = "", origin: BaseException | None = None) -> None:
        self.detail = detail
        self.origin = origin
        super().__init__()
