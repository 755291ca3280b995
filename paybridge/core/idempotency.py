"""Idempotency support for API endpoints.

Checks the ``Idempotency-Key`` header. If a cached response exists for the key,
``check_idempotency`` returns a JSONResponse to replay; otherwise it reserves
the key and returns an ``IdempotencyResult`` so the endpoint can proceed. After
the endpoint completes, call ``record_idempotency_response`` to persist the
response, or ``release_idempotency_key`` if the request failed and may be retried.
"""

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paybridge.repositories.idempotency_repository import IdempotencyRepository


def _in_progress() -> JSONResponse:
    return JSONResponse(
        content={"detail": "A request with this Idempotency-Key is in progress"},
        status_code=409,
    )


@dataclass
class IdempotencyResult:
    """Holds pending idempotency key info for later recording."""

    key: str
    method: str
    path: str


def check_idempotency(
    request: Request,
    db: Session,
) -> JSONResponse | IdempotencyResult | None:
    """Check the ``Idempotency-Key`` header for a cached response.

    Returns:
        - ``None`` if no ``Idempotency-Key`` header is present.
        - A ``JSONResponse`` with the cached response and ``Idempotency-Replayed: true``
          if a completed record exists, or a 409 if the first request is still running.
        - An ``IdempotencyResult`` if this is a new request that should be recorded.
    """
    key = request.headers.get("Idempotency-Key")
    if not key:
        return None

    repo = IdempotencyRepository(db)
    existing = repo.get_by_key(key)

    if existing is not None:
        if existing.response_status is None:
            return _in_progress()
        response = JSONResponse(
            content=existing.response_body,
            status_code=int(existing.response_status),
        )
        response.headers["Idempotency-Replayed"] = "true"
        return response

    try:
        repo.create(
            idempotency_key=key,
            request_method=request.method,
            request_path=request.url.path,
        )
    except IntegrityError:
        # A concurrent request reserved the key between the lookup and the insert.
        db.rollback()
        return _in_progress()
    return IdempotencyResult(key=key, method=request.method, path=request.url.path)


def record_idempotency_response(
    db: Session,
    key: str,
    status: int,
    body: dict[str, Any],
) -> None:
    """Persist the endpoint response so subsequent calls return the cached result."""
    repo = IdempotencyRepository(db)
    record = repo.get_by_key(key)
    if record is not None:
        repo.update_response(record, status, body)


def release_idempotency_key(db: Session, key: str) -> None:
    """Forget a reserved key after a failed request so the client can retry."""
    repo = IdempotencyRepository(db)
    record = repo.get_by_key(key)
    if record is not None and record.response_status is None:
        repo.delete(record)
