from __future__ import annotations

from collections.abc import Callable

import pytest
from fastapi import APIRouter, Depends, FastAPI, HTTPException
from pydantic import BaseModel

from faultline.api import create_app
from faultline.config import Settings
from faultline.responses import ResponseEmitter, get_emitter
from faultline.service_errors import (
    AuthorizationError,
    ConflictError,
    DatabaseFailure,
    NotFoundError,
    RateLimitError,
    ValidationError,
)


class FakePyMySQLIntegrityError(Exception):
    """Shaped like pymysql.err.IntegrityError: args == (errno, message)."""


FakePyMySQLIntegrityError.__module__ = "pymysql.err"


class RecordingSink:
    """LogSink double that keeps every entry."""

    def __init__(self) -> None:
        self.entries: list[dict] = []

    def write(self, request_id, level, message, context, exc_info=None) -> None:
        self.entries.append(
            {
                "request_id": request_id,
                "level": level,
                "message": message,
                "context": dict(context),
                "exc_info": exc_info,
            }
        )


class InvoiceIn(BaseModel):
    customer_id: int
    items: list[dict]
    notes: str = ""


def build_invoices_router() -> APIRouter:
    router = APIRouter(prefix="/v1/invoices", tags=["invoices"])

    @router.get("/{invoice_id}")
    async def get_invoice(invoice_id: str, emitter: ResponseEmitter = Depends(get_emitter)):
        if invoice_id == "INV-1":
            return emitter.success({"id": "INV-1", "total": "10.00"})
        raise NotFoundError("Invoice", invoice_id)

    @router.post("")
    async def create_invoice(body: InvoiceIn, emitter: ResponseEmitter = Depends(get_emitter)):
        if not body.items:
            raise ValidationError({"items": "At least one item is required"}, "Invoice validation failed")
        return emitter.created({"customer_id": body.customer_id, "items": len(body.items)})

    @router.post("/{invoice_id}/payments")
    async def pay_invoice(invoice_id: str):
        raise DatabaseFailure(
            "45000", 1644, "SQLSTATE[45000]: <<Unknown error>>: 1644 Overpayment not allowed"
        )

    @router.post("/{invoice_id}/duplicate")
    async def duplicate_invoice(invoice_id: str):
        raise FakePyMySQLIntegrityError(1062, "Duplicate entry 'john@example.com' for key 'uk_email_franchise'")

    @router.delete("/{invoice_id}")
    async def delete_invoice(invoice_id: str):
        raise ConflictError("Paid invoices cannot be deleted", "INVOICE_PAID")

    @router.post("/{invoice_id}/approve")
    async def approve_invoice(invoice_id: str):
        raise AuthorizationError("APPROVE_INVOICES")

    @router.get("/{invoice_id}/export")
    async def export_invoice(invoice_id: str):
        raise RateLimitError(30)

    @router.get("/{invoice_id}/legacy")
    async def legacy_lookup(invoice_id: str):
        raise HTTPException(status_code=404, detail="Project not found")

    @router.get("/{invoice_id}/crash")
    async def crash(invoice_id: str):
        raise RuntimeError("connection pool exhausted in /srv/app/repositories/invoices.py")

    return router


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_app(sink: RecordingSink) -> Callable[..., FastAPI]:
    def _make(**overrides) -> FastAPI:
        settings = Settings(**{"strict_emit": True, **overrides})
        return create_app(settings=settings, routers=[build_invoices_router()], sink=sink)

    return _make
