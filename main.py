from fastapi import FastAPI, HTTPException, Request, Depends, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List
import logging
import structlog
import time
from contextlib import asynccontextmanager

from models import (
    Account,
    AccountsCreateRequest,
    AccountsCreateResponse,
    ErrorResponse,
    HealthResponse,
    TransferRequest,
    TransferResponse,
)
from services import TransferService, get_transfer_service
from repositories import AccountRepository, get_account_repository, set_account_repository
from exceptions import (
    AccountNotFound,
    DuplicateAccount,
    InsufficientFunds,
    InvalidTransfer,
    WriteConflict,
    is_write_conflict,
)
from config import get_settings
from pymongo.errors import PyMongoError

settings = get_settings()

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())


def configure_logging(log_format: str) -> None:
    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "text"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# Configure structured logging
configure_logging(settings.log_format)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address)


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    repository = get_account_repository()
    logger.info("Starting Account Transfer API", store_backend=repository.backend_name)
    await repository.ensure_indexes()
    yield
    # Shutdown
    logger.info("Shutting down Account Transfer API")
    await repository.close()
    set_account_repository(None)


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Multi-document transactional balance transfers between accounts",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response


# Dependency injection
def get_service(account_repo=Depends(get_account_repository)) -> TransferService:
    return get_transfer_service(account_repo)


def error_response(status_code: int, detail: str, error_code: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=detail, error_code=error_code, **extra).model_dump(mode="json"),
    )


@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and the account store"
)
async def health_check(account_repo: AccountRepository = Depends(get_account_repository)):
    try:
        accounts_count = await account_repo.get_accounts_count()

        return HealthResponse(
            status="healthy",
            store_backend=account_repo.backend_name,
            accounts_count=accounts_count
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )


@app.post(
    "/accounts",
    response_model=AccountsCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Accounts",
    description="Bulk insert account fixtures",
    responses={409: {"description": "An account with this name already exists"}}
)
async def create_accounts(
    request: AccountsCreateRequest,
    account_repo: AccountRepository = Depends(get_account_repository)
):
    documents = [account.model_dump() for account in request.accounts]
    inserted = await account_repo.insert_accounts(documents)
    logger.info("Accounts inserted", inserted=inserted)
    return AccountsCreateResponse(inserted=inserted)


@app.get("/accounts", response_model=List[Account], summary="List Accounts")
async def list_accounts(account_repo: AccountRepository = Depends(get_account_repository)):
    documents = await account_repo.list_accounts()
    return [Account.from_document(document) for document in documents]


@app.get(
    "/accounts/{name}",
    response_model=Account,
    summary="Get Account",
    responses={404: {"description": "Account not found"}}
)
async def get_account(name: str, account_repo: AccountRepository = Depends(get_account_repository)):
    document = await account_repo.get_account(name)
    if document is None:
        raise AccountNotFound(name)
    return Account.from_document(document)


@app.delete("/accounts", status_code=status.HTTP_204_NO_CONTENT, summary="Drop Accounts")
async def drop_accounts(account_repo: AccountRepository = Depends(get_account_repository)):
    await account_repo.drop()
    logger.info("Accounts collection dropped")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Main transfer endpoint
@app.post(
    "/transfers",
    response_model=TransferResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Transfer Between Accounts",
    description="Debit one account and credit another in a single transaction",
    responses={
        201: {"description": "Transfer committed"},
        400: {"description": "Insufficient funds"},
        404: {"description": "Account not found"},
        409: {"description": "Write conflict with a concurrent transaction"},
        422: {"description": "Validation error"},
        429: {"description": "Rate limit exceeded"},
        500: {"description": "Internal server error"}
    }
)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def create_transfer(
    request: Request,
    transfer_request: TransferRequest,
    service: TransferService = Depends(get_service)
):
    logger.info(
        "Transfer request received",
        source=transfer_request.source,
        destination=transfer_request.destination
    )

    result = await service.execute_transfer(transfer_request)

    logger.info("Transfer request completed successfully", transfer_id=result.transferId)

    return result


@app.exception_handler(InvalidTransfer)
async def invalid_transfer_handler(request: Request, exc: InvalidTransfer):
    return error_response(422, str(exc), "INVALID_TRANSFER")


@app.exception_handler(InsufficientFunds)
async def insufficient_funds_handler(request: Request, exc: InsufficientFunds):
    return error_response(400, str(exc), "INSUFFICIENT_FUNDS", balance=exc.balance)


@app.exception_handler(AccountNotFound)
async def account_not_found_handler(request: Request, exc: AccountNotFound):
    return error_response(404, str(exc), "ACCOUNT_NOT_FOUND")


@app.exception_handler(DuplicateAccount)
async def duplicate_account_handler(request: Request, exc: DuplicateAccount):
    return error_response(409, str(exc), "DUPLICATE_ACCOUNT")


@app.exception_handler(WriteConflict)
@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: Exception):
    if is_write_conflict(exc):
        return error_response(
            409,
            "Transfer conflicted with a concurrent transaction and was not applied",
            "WRITE_CONFLICT",
        )

    logger.error("Store operation failed", error=str(exc), url=str(request.url), method=request.method)
    return error_response(503, "Account store unavailable", "STORE_ERROR")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response(exc.status_code, exc.detail, f"HTTP_{exc.status_code}")


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return error_response(500, "Internal server error", "INTERNAL_ERROR")


# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
