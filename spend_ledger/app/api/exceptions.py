from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    DuplicateTransactionError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    LedgerError,
    NotFoundError,
)


def _error_response(status_code: int, exc: LedgerError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"detail": str(exc), "code": exc.code}
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(404, exc)

    @app.exception_handler(InsufficientBalanceError)
    async def insufficient_balance_handler(
        request: Request, exc: InsufficientBalanceError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={
                "detail": str(exc),
                "code": exc.code,
                "balance": exc.balance,
                "required": exc.required,
                "shortfall": exc.shortfall,
            },
        )

    @app.exception_handler(DuplicateTransactionError)
    async def duplicate_transaction_handler(
        request: Request, exc: DuplicateTransactionError
    ) -> JSONResponse:
        return _error_response(409, exc)

    @app.exception_handler(IdempotencyConflictError)
    async def idempotency_conflict_handler(
        request: Request, exc: IdempotencyConflictError
    ) -> JSONResponse:
        return _error_response(409, exc)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})
