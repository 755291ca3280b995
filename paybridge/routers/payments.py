"""Payment API endpoints."""

import json
import logging
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from paybridge.core.database import get_db
from paybridge.core.idempotency import (
    IdempotencyResult,
    check_idempotency,
    record_idempotency_response,
    release_idempotency_key,
)
from paybridge.models.payment import Payment, PaymentMethod, PaymentStatus
from paybridge.repositories.invoice_repository import InvoiceRepository
from paybridge.repositories.payment_repository import PaymentRepository
from paybridge.schemas.payment import (
    PaymentInitiate,
    PaymentInitiateResponse,
    PaymentReceiptResponse,
    PaymentResponse,
    PaymentUpdate,
    ProcessorStatusResponse,
)
from paybridge.services.payment_provider import ProcessorError
from paybridge.services.payment_service import (
    ClientNotFoundError,
    InvoiceAlreadyPaidError,
    InvoiceNotFoundError,
    OutcomeStatus,
    PaymentNotFoundError,
    PaymentService,
    PaymentValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_payment_service(request: Request, db: Session = Depends(get_db)) -> PaymentService:
    return PaymentService(
        db,
        broadcaster=request.app.state.broadcaster,
        token_cache=request.app.state.token_cache,
    )


def _processor_error(e: ProcessorError) -> HTTPException:
    logger.error("Processor error: %s", e)
    return HTTPException(status_code=502, detail=e.message)


@router.post(
    "/initiate",
    status_code=202,
    response_model=PaymentInitiateResponse,
    summary="Initiate a payment",
    responses={
        400: {"description": "Validation error"},
        404: {"description": "Invoice or client not found"},
        409: {"description": "Invoice already paid"},
        502: {"description": "Processor error"},
    },
)
async def initiate_payment(
    data: PaymentInitiate,
    request: Request,
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
) -> PaymentInitiateResponse | JSONResponse:
    """Start a charge against an invoice.

    The response only acknowledges the charge; the outcome arrives later
    through a webhook or a status poll.
    """
    idempotency = check_idempotency(request, db)
    if isinstance(idempotency, JSONResponse):
        return idempotency

    try:
        payment = await service.initiate(data)
    except PaymentValidationError as e:
        _release(db, idempotency)
        raise HTTPException(status_code=400, detail=str(e)) from None
    except (InvoiceNotFoundError, ClientNotFoundError) as e:
        _release(db, idempotency)
        raise HTTPException(status_code=404, detail=str(e)) from None
    except InvoiceAlreadyPaidError as e:
        _release(db, idempotency)
        raise HTTPException(status_code=409, detail=str(e)) from None
    except ProcessorError as e:
        _release(db, idempotency)
        raise _processor_error(e) from None
    except Exception:
        _release(db, idempotency)
        raise

    response = PaymentInitiateResponse(
        payment_id=payment.id,  # type: ignore[arg-type]
        payment_number=payment.payment_number,  # type: ignore[arg-type]
        status=payment.status,  # type: ignore[arg-type]
        processor_correlation=payment.processor_refs,
    )
    if isinstance(idempotency, IdempotencyResult):
        record_idempotency_response(db, idempotency.key, 202, response.model_dump(mode="json"))
    return response


def _release(db: Session, idempotency: IdempotencyResult | None) -> None:
    if isinstance(idempotency, IdempotencyResult):
        db.rollback()
        release_idempotency_key(db, idempotency.key)


async def _read_json(request: Request) -> tuple[bytes, Any]:
    body = await request.body()
    try:
        return body, json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from None


async def _handle_webhook(
    service: PaymentService, method: PaymentMethod, payload: Any
) -> dict[str, Any]:
    _, outcome = await service.handle_callback(method, payload)
    if outcome is None:
        raise HTTPException(status_code=400, detail="Invalid callback payload")
    if outcome.status == OutcomeStatus.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Payment not found")
    return {"success": True}


@router.post("/webhooks/mobile-money")
async def mobile_money_webhook(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> dict[str, Any]:
    """Receive an M-Pesa STK push callback.

    Public endpoint: Daraja does not sign callbacks, so only the payload
    shape is checked. Duplicate deliveries are acknowledged without effect.
    """
    _, payload = await _read_json(request)
    return await _handle_webhook(service, PaymentMethod.MPESA, payload)


@router.post("/webhooks/card-gateway")
async def card_gateway_webhook(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
    paystack_signature: str | None = Header(None, alias="x-paystack-signature"),
) -> dict[str, Any]:
    """Receive a Paystack webhook event."""
    body, payload = await _read_json(request)
    provider = service.provider_for(PaymentMethod.PAYSTACK)
    if not provider.verify_webhook_signature(body, paystack_signature):
        logger.warning("Rejected Paystack webhook with an invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")
    return await _handle_webhook(service, PaymentMethod.PAYSTACK, payload)


async def _query_status(
    service: PaymentService, method: PaymentMethod, correlation_id: str
) -> ProcessorStatusResponse:
    try:
        result = await service.query_and_reconcile(method, correlation_id)
    except PaymentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    except ProcessorError as e:
        raise _processor_error(e) from None

    status = result.processor_status
    return ProcessorStatusResponse(
        status=result.payment.status,  # type: ignore[arg-type]
        processor_state=status.state.value if status.state else "unknown",
        result_code=status.result_code,
        result_desc=status.result_desc,
        payment_id=result.payment.id,  # type: ignore[arg-type]
        invoice_id=result.payment.invoice_id,  # type: ignore[arg-type]
        applied=result.applied,
        raw=status.raw,
    )


@router.get("/mobile-money-status/{checkout_request_id}", response_model=ProcessorStatusResponse)
async def mobile_money_status(
    checkout_request_id: str,
    service: PaymentService = Depends(get_payment_service),
) -> ProcessorStatusResponse:
    """Poll M-Pesa for a checkout request and reconcile the local payment."""
    return await _query_status(service, PaymentMethod.MPESA, checkout_request_id)


@router.get("/card-gateway-status/{reference}", response_model=ProcessorStatusResponse)
async def card_gateway_status(
    reference: str,
    service: PaymentService = Depends(get_payment_service),
) -> ProcessorStatusResponse:
    """Verify a Paystack transaction and reconcile the local payment."""
    return await _query_status(service, PaymentMethod.PAYSTACK, reference)


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: UUID,
    db: Session = Depends(get_db),
) -> Payment:
    """Get a payment by ID."""
    repo = PaymentRepository(db)
    payment = repo.get_by_id(payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment


@router.get("/{payment_id}/receipt", response_model=PaymentReceiptResponse)
async def get_payment_receipt(
    payment_id: UUID,
    db: Session = Depends(get_db),
) -> PaymentReceiptResponse:
    """Receipt for a completed payment."""
    payment = PaymentRepository(db).get_by_id(payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    if payment.status != PaymentStatus.COMPLETED.value:
        raise HTTPException(status_code=400, detail="Only completed payments have a receipt")

    invoice = InvoiceRepository(db).get_by_id(payment.invoice_id)  # type: ignore[arg-type]
    if not invoice:
        raise HTTPException(status_code=404, detail="Invoice not found")

    return PaymentReceiptResponse(
        payment_id=payment.id,  # type: ignore[arg-type]
        payment_number=payment.payment_number,  # type: ignore[arg-type]
        invoice_id=invoice.id,  # type: ignore[arg-type]
        invoice_number=invoice.invoice_number,  # type: ignore[arg-type]
        amount=payment.amount,  # type: ignore[arg-type]
        currency=payment.currency,  # type: ignore[arg-type]
        method=payment.method,  # type: ignore[arg-type]
        transaction_id=payment.transaction_id,  # type: ignore[arg-type]
        paid_at=payment.completed_at,  # type: ignore[arg-type]
        invoice_status=invoice.status,  # type: ignore[arg-type]
        invoice_balance=Decimal(str(invoice.total_amount)) - Decimal(str(invoice.paid_amount)),
    )


@router.patch("/{payment_id}", response_model=PaymentResponse)
async def update_payment(
    payment_id: UUID,
    data: PaymentUpdate,
    db: Session = Depends(get_db),
) -> Payment:
    """Update a payment's notes."""
    repo = PaymentRepository(db)
    payment = repo.update(payment_id, data)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment


@router.delete("/{payment_id}", status_code=204)
async def delete_payment(
    payment_id: UUID,
    db: Session = Depends(get_db),
) -> Response:
    """Delete a payment that never completed."""
    repo = PaymentRepository(db)
    try:
        deleted = repo.delete(payment_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    if not deleted:
        raise HTTPException(status_code=404, detail="Payment not found")
    return Response(status_code=204)
