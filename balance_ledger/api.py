"""
FastAPI REST API Module

Exposes the balance engine over HTTP: balance lookup, deposit, withdrawal and
transfer. Request fields are validated here; the engine only ever sees
well-formed values. Ledger errors are mapped onto status codes by the
exception handlers registered in create_app().
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Depends, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .balance import BalanceEngine
from .config import LedgerConfig, get_config
from .errors import ErrorKind, LedgerError
from .storage import LedgerStore, create_store
from .transactions import COMMENT_MAX_LENGTH
from .users import StoreUserDirectory
from .logging_config import get_logger, setup_logging


MIN_AMOUNT = Decimal("0.01")
MAX_AMOUNT = Decimal("999999999999.99")

logger = get_logger("balance_ledger.api")


# Pydantic models for API requests
class DepositRequest(BaseModel):
    user_id: int = Field(..., gt=0, description="Receiving user")
    amount: Decimal = Field(..., ge=MIN_AMOUNT, le=MAX_AMOUNT, decimal_places=2)
    comment: Optional[str] = Field(None, max_length=COMMENT_MAX_LENGTH)


class WithdrawRequest(BaseModel):
    user_id: int = Field(..., gt=0, description="User whose balance is debited")
    amount: Decimal = Field(..., ge=MIN_AMOUNT, le=MAX_AMOUNT, decimal_places=2)
    comment: Optional[str] = Field(None, max_length=COMMENT_MAX_LENGTH)


class TransferRequest(BaseModel):
    from_user_id: int = Field(..., gt=0, description="Sender")
    to_user_id: int = Field(..., gt=0, description="Recipient")
    amount: Decimal = Field(..., ge=MIN_AMOUNT, le=MAX_AMOUNT, decimal_places=2)
    comment: Optional[str] = Field(None, max_length=COMMENT_MAX_LENGTH)


# Ledger System Context
class LedgerSystem:
    """Ledger components wired around one store"""

    def __init__(self, store: LedgerStore):
        self.store = store
        self.users = StoreUserDirectory(store)
        self.engine = BalanceEngine(store, self.users)

    @classmethod
    def from_config(cls, config: LedgerConfig) -> 'LedgerSystem':
        setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
        return cls(create_store(config))

    def close(self) -> None:
        self.store.close()


# Global ledger system instance, built on first request
ledger_system: Optional[LedgerSystem] = None


def get_ledger_system() -> LedgerSystem:
    global ledger_system
    if ledger_system is None:
        ledger_system = LedgerSystem.from_config(get_config())
    return ledger_system


STATUS_BY_KIND = {
    ErrorKind.USER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INSUFFICIENT_FUNDS: status.HTTP_409_CONFLICT,
    ErrorKind.SELF_TRANSFER: status.HTTP_400_BAD_REQUEST,
    ErrorKind.STORAGE_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

INTERNAL_ERROR_MESSAGE = "An error occurred while processing the operation."


def success_response(data: Dict[str, Any]) -> Dict[str, Any]:
    return {"success": True, "data": data}


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": {"error": message}}
    )


def _validation_errors(errors: List[Dict[str, Any]]) -> Dict[str, List[str]]:
    """Group validation messages by field name"""
    grouped: Dict[str, List[str]] = {}
    for error in errors:
        loc = error.get("loc", ())
        # Drop the "body"/"path"/"query" prefix
        parts = loc[1:] if len(loc) > 1 else loc
        field = ".".join(str(part) for part in parts) or "request"
        grouped.setdefault(field, []).append(error.get("msg", "Invalid value"))
    return grouped


async def ledger_exception_handler(request: Request, exc: LedgerError):
    """Map ledger errors onto status codes"""
    status_code = STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)

    if exc.kind is ErrorKind.STORAGE_FAILURE:
        logger.error(f"Storage failure on {request.url.path}: {exc.context}")
        return error_response(status_code, INTERNAL_ERROR_MESSAGE)

    return error_response(status_code, exc.message)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Reshape request validation errors into the ledger envelope"""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "message": "Validation failed.",
            "error": _validation_errors(exc.errors())
        }
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions with an opaque message"""
    logger.error(f"Unhandled error on {request.url.path}: {type(exc).__name__}: {exc}", exc_info=exc)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, INTERNAL_ERROR_MESSAGE)


def add_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LedgerError, ledger_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)


def create_app() -> FastAPI:
    """Create the FastAPI application"""
    app = FastAPI(
        title="Balance Ledger API",
        description="Per-user balances with an append-only transaction history",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    add_error_handlers(app)

    # Endpoints are plain functions: FastAPI runs them in its thread pool,
    # so blocking store calls never stall the event loop.

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/api/balance/{user_id}")
    def get_balance(user_id: int, system: LedgerSystem = Depends(get_ledger_system)):
        """Get the current balance of a user"""
        if user_id <= 0:
            return error_response(status.HTTP_400_BAD_REQUEST, "User ID must be a positive integer.")

        view = system.engine.get_balance(user_id)
        return success_response(view.to_dict())

    @app.post("/api/deposit")
    def deposit(request: DepositRequest, system: LedgerSystem = Depends(get_ledger_system)):
        """Top up a user's balance"""
        result = system.engine.deposit(request.user_id, request.amount, request.comment)
        data = result.to_dict()
        data["message"] = "Balance topped up successfully."
        return success_response(data)

    @app.post("/api/withdraw")
    def withdraw(request: WithdrawRequest, system: LedgerSystem = Depends(get_ledger_system)):
        """Withdraw funds from a user's balance"""
        result = system.engine.withdraw(request.user_id, request.amount, request.comment)
        data = result.to_dict()
        data["message"] = "Funds withdrawn successfully."
        return success_response(data)

    @app.post("/api/transfer")
    def transfer(request: TransferRequest, system: LedgerSystem = Depends(get_ledger_system)):
        """Transfer funds between two users"""
        result = system.engine.transfer(
            request.from_user_id, request.to_user_id, request.amount, request.comment
        )
        data = result.to_dict()
        data["message"] = "Transfer completed successfully."
        return success_response(data)

    return app


app = create_app()


# Run server function
def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "balance_ledger.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
