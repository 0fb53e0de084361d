"""Async client for services that speak the faultline envelope.

Success envelopes yield their `data`; error envelopes are raised as
`ApiError` carrying the server's code, type and field details.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
import pydantic

from faultline.responses import ErrorEnvelope, SuccessEnvelope


class ApiError(Exception):
    """An error envelope (or a failure to get one) from the server."""

    def __init__(
        self,
        status: int,
        code: str,
        message: str,
        *,
        error_type: str = "",
        details: dict[str, Any] | None = None,
        request_id: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        self.status = status
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details or {}
        self.request_id = request_id
        self.retry_after = retry_after
        super().__init__(f"{status} {code}: {message}")

    @property
    def is_validation_error(self) -> bool:
        return self.error_type == "validation_error"

    @property
    def field_errors(self) -> dict[str, str]:
        if not self.is_validation_error:
            return {}
        return {name: str(msg) for name, msg in self.details.items()}


def format_field_name(name: str) -> str:
    """customer_id -> Customer Id"""
    return " ".join(part[:1].upper() + part[1:] for part in name.replace("-", "_").split("_") if part)


def _retry_after(resp: httpx.Response) -> int | None:
    value = resp.headers.get("Retry-After", "")
    return int(value) if value.isdigit() else None


def parse_envelope(resp: httpx.Response) -> SuccessEnvelope:
    """Return the success envelope or raise ApiError."""
    try:
        body = resp.json()
    except ValueError:
        raise ApiError(resp.status_code, "INVALID_RESPONSE", "Server returned an invalid response")

    try:
        if isinstance(body, dict) and body.get("success") is True:
            return SuccessEnvelope.model_validate(body)
        envelope = ErrorEnvelope.model_validate(body)
    except pydantic.ValidationError:
        raise ApiError(resp.status_code, "INVALID_RESPONSE", "Server returned an unexpected response shape")

    raise ApiError(
        resp.status_code,
        envelope.error.code,
        envelope.message,
        error_type=envelope.error.type,
        details=envelope.error.details,
        request_id=envelope.meta.request_id,
        retry_after=_retry_after(resp),
    )


@dataclass(frozen=True)
class FaultlineClient:
    """Minimal HTTP client for envelope-speaking services."""

    base_url: str
    timeout_seconds: float = 5.0
    transport: httpx.AsyncBaseTransport | None = None
    headers: dict[str, str] = field(default_factory=dict)

    async def request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> SuccessEnvelope:
        merged = {"Accept": "application/json", **self.headers, **(headers or {})}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self.transport,
            ) as client:
                resp = await client.request(method, path, headers=merged, params=params, json=json)
        except httpx.TransportError as exc:
            raise ApiError(
                0,
                "NETWORK_ERROR",
                "Unable to connect to server. Please check your connection.",
            ) from exc
        return parse_envelope(resp)

    async def get(self, path: str, params: dict[str, Any] | None = None, **kwargs: Any) -> Any:
        return (await self.request("GET", path, params=params, **kwargs)).data

    async def post(self, path: str, json: Any = None, **kwargs: Any) -> Any:
        return (await self.request("POST", path, json=json if json is not None else {}, **kwargs)).data

    async def put(self, path: str, json: Any = None, **kwargs: Any) -> Any:
        return (await self.request("PUT", path, json=json if json is not None else {}, **kwargs)).data

    async def delete(self, path: str, json: Any = None, **kwargs: Any) -> Any:
        return (await self.request("DELETE", path, json=json or None, **kwargs)).data
