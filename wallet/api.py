import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional, Union
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import Settings, configure_logging
from .errors import (
    DuplicateEntryError,
    ForbiddenError,
    InsufficientBalanceError,
    InvalidTransitionError,
    LedgerUnavailableError,
    NoCapacityError,
    NotFoundError,
    QuotaExceededError,
    TierRequiredError,
    ValidationError,
    WalletServiceError,
)
from .models import (
    Account,
    AssignmentCommand,
    AutoAssignCommand,
    AutoAssignResult,
    BalanceSummary,
    CompleteTaskRequest,
    CreateReviewerRequest,
    DeactivationResult,
    ExpirySweepResult,
    LedgerHistoryResponse,
    ManualAssignCommand,
    ManualAssignResult,
    Notification,
    QuotaUsage,
    RedistributeResult,
    RegisterAccountRequest,
    Reviewer,
    ReviewWithdrawal,
    SettlementRunResult,
    StatusOverride,
    SubmitWithdrawal,
    SubscriptionPurchase,
    SubscriptionResponse,
    TaskCompletionResult,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatus,
)
from .platform import Platform, create_platform
from .storage import StorageUnavailable

logger = logging.getLogger(__name__)

STATUS_CODES: dict[type, int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    DuplicateEntryError: status.HTTP_409_CONFLICT,
    InsufficientBalanceError: status.HTTP_400_BAD_REQUEST,
    QuotaExceededError: status.HTTP_429_TOO_MANY_REQUESTS,
    TierRequiredError: status.HTTP_403_FORBIDDEN,
    NoCapacityError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    LedgerUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    context: dict[str, Any] = {}


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: float


def error_response(status_code: int, code: str, message: str, field: Optional[str] = None,
                   context: Optional[dict] = None) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorDetail(code=code, message=message, field=field, context=context or {}),
        timestamp=time.time(),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def status_for(exc: WalletServiceError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return status.HTTP_400_BAD_REQUEST


async def wallet_error_handler(request: Request, exc: WalletServiceError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return error_response(status_code, exc.code, exc.message, getattr(exc, "field", None), exc.context)


async def storage_unavailable_handler(request: Request, exc: StorageUnavailable) -> JSONResponse:
    logger.error("%s %s -> storage unavailable: %s", request.method, request.url.path, exc)
    return error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        LedgerUnavailableError.code,
        "Ledger storage is unavailable. Please retry shortly.",
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(part) for part in err.get("loc", [])], "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    first = errors[0] if errors else {"loc": [], "msg": "Invalid request"}
    field = ".".join(first["loc"])
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        ValidationError.code,
        f"Validation error on field '{field}': {first['msg']}",
        field,
        {"validation_errors": errors},
    )


def get_platform(request: Request) -> Platform:
    return request.app.state.platform


def create_app(platform: Optional[Platform] = None, start_worker: bool = True) -> FastAPI:
    settings = platform.settings if platform else Settings()
    configure_logging(settings.log_level)
    platform = platform or create_platform(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Only a long-running server owns the worker and the storage lifecycle.
        if start_worker:
            platform.start_worker()
        yield
        if start_worker:
            platform.close()

    app = FastAPI(
        title="Membership Wallet API",
        description="Ledger-derived balances, withdrawal review workflow and reviewer assignment",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.platform = platform

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(WalletServiceError, wallet_error_handler)
    app.add_exception_handler(StorageUnavailable, storage_unavailable_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.get("/health", tags=["System"])
    def health_check(p: Platform = Depends(get_platform)):
        return {"status": "healthy" if p.storage.is_open else "degraded", "service": "membership-wallet"}

    # Accounts

    @app.post("/accounts", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
    def register_account(request: RegisterAccountRequest, p: Platform = Depends(get_platform)) -> Account:
        return p.accounts.register(request)

    @app.get("/accounts/{account_id}", response_model=Account, tags=["Accounts"])
    def get_account(account_id: UUID, p: Platform = Depends(get_platform)) -> Account:
        return p.accounts.get(account_id)

    @app.get("/accounts/{account_id}/balance", response_model=BalanceSummary, tags=["Accounts"])
    def get_balance(account_id: UUID, p: Platform = Depends(get_platform)) -> BalanceSummary:
        return p.calculator.compute_balance(account_id)

    @app.get("/accounts/{account_id}/ledger", response_model=LedgerHistoryResponse, tags=["Accounts"])
    def get_ledger(account_id: UUID, limit: int = 50, offset: int = 0,
                   p: Platform = Depends(get_platform)) -> LedgerHistoryResponse:
        return p.calculator.history(account_id, limit, offset)

    @app.get("/accounts/{account_id}/quota", response_model=QuotaUsage, tags=["Accounts"])
    def get_quota(account_id: UUID, p: Platform = Depends(get_platform)) -> QuotaUsage:
        account = p.accounts.get(account_id)
        now = p.accounts.clock()
        return p.quota.usage(account_id, now, account.tier if account.tier_is_active(now) else None)

    @app.get("/accounts/{account_id}/notifications", response_model=list[Notification], tags=["Accounts"])
    def get_notifications(account_id: UUID, p: Platform = Depends(get_platform)) -> list[Notification]:
        return [Notification(**row) for row in p.storage.notifications_for(account_id)]

    @app.post("/accounts/{account_id}/tasks", response_model=TaskCompletionResult,
              status_code=status.HTTP_201_CREATED, tags=["Tasks"])
    def complete_task(account_id: UUID, request: CompleteTaskRequest,
                      p: Platform = Depends(get_platform)) -> TaskCompletionResult:
        return p.accounts.complete_task(account_id, request)

    @app.post("/accounts/{account_id}/subscriptions", response_model=SubscriptionResponse,
              status_code=status.HTTP_201_CREATED, tags=["Subscriptions"])
    def activate_subscription(account_id: UUID, purchase: SubscriptionPurchase,
                              p: Platform = Depends(get_platform)) -> SubscriptionResponse:
        return p.accounts.activate_subscription(account_id, purchase)

    # Withdrawals

    @app.post("/withdrawals", response_model=WithdrawalResponse,
              status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
    def submit_withdrawal(request: SubmitWithdrawal, x_account_id: UUID = Header(...),
                          p: Platform = Depends(get_platform)) -> WithdrawalResponse:
        return p.workflow.submit(x_account_id, request)

    @app.get("/withdrawals", response_model=list[WithdrawalRequest], tags=["Withdrawals"])
    def my_withdrawals(x_account_id: UUID = Header(...), status_filter: Optional[WithdrawalStatus] = None,
                       p: Platform = Depends(get_platform)) -> list[WithdrawalRequest]:
        return p.workflow.list_for_account(x_account_id, status_filter)

    @app.get("/withdrawals/{withdrawal_id}", response_model=WithdrawalRequest, tags=["Withdrawals"])
    def get_withdrawal(withdrawal_id: UUID, p: Platform = Depends(get_platform)) -> WithdrawalRequest:
        return p.workflow.get(withdrawal_id)

    @app.post("/withdrawals/{withdrawal_id}/review", response_model=WithdrawalResponse, tags=["Withdrawals"])
    def review_withdrawal(withdrawal_id: UUID, review: ReviewWithdrawal, x_reviewer_id: UUID = Header(...),
                          p: Platform = Depends(get_platform)) -> WithdrawalResponse:
        return p.workflow.review(withdrawal_id, x_reviewer_id, review)

    @app.post("/withdrawals/{withdrawal_id}/cancel", response_model=WithdrawalResponse, tags=["Withdrawals"])
    def cancel_withdrawal(withdrawal_id: UUID, x_account_id: UUID = Header(...),
                          p: Platform = Depends(get_platform)) -> WithdrawalResponse:
        return p.workflow.cancel(withdrawal_id, x_account_id)

    @app.post("/withdrawals/{withdrawal_id}/override", response_model=WithdrawalResponse, tags=["Withdrawals"])
    def override_withdrawal(withdrawal_id: UUID, override: StatusOverride, x_reviewer_id: UUID = Header(...),
                            p: Platform = Depends(get_platform)) -> WithdrawalResponse:
        return p.workflow.override_status(withdrawal_id, x_reviewer_id, override)

    # Reviewers and assignment

    @app.post("/reviewers", response_model=Reviewer, status_code=status.HTTP_201_CREATED, tags=["Reviewers"])
    def add_reviewer(request: CreateReviewerRequest, p: Platform = Depends(get_platform)) -> Reviewer:
        return p.balancer.add_reviewer(request)

    @app.get("/reviewers", response_model=list[Reviewer], tags=["Reviewers"])
    def list_reviewers(active_only: bool = False, p: Platform = Depends(get_platform)) -> list[Reviewer]:
        return p.balancer.list_reviewers(active_only)

    @app.get("/reviewers/{reviewer_id}/withdrawals", response_model=list[WithdrawalRequest], tags=["Reviewers"])
    def reviewer_withdrawals(reviewer_id: UUID, status_filter: Optional[WithdrawalStatus] = None,
                             p: Platform = Depends(get_platform)) -> list[WithdrawalRequest]:
        return p.workflow.list_for_reviewer(reviewer_id, status_filter)

    @app.post("/reviewers/{reviewer_id}/activate", response_model=Reviewer, tags=["Reviewers"])
    def activate_reviewer(reviewer_id: UUID, p: Platform = Depends(get_platform)) -> Reviewer:
        return p.balancer.activate_reviewer(reviewer_id)

    @app.post("/reviewers/{reviewer_id}/deactivate", response_model=DeactivationResult, tags=["Reviewers"])
    def deactivate_reviewer(reviewer_id: UUID, reassign: bool = False,
                            p: Platform = Depends(get_platform)) -> DeactivationResult:
        return p.balancer.deactivate_reviewer(reviewer_id, reassign)

    @app.post("/assignments", response_model=Union[AutoAssignResult, ManualAssignResult, RedistributeResult],
              tags=["Reviewers"])
    def run_assignment(command: AssignmentCommand, p: Platform = Depends(get_platform)):
        if isinstance(command, AutoAssignCommand):
            return p.balancer.auto_assign()
        if isinstance(command, ManualAssignCommand):
            return p.balancer.manual_assign(command.account_id, command.reviewer_id)
        return p.balancer.redistribute()

    # Maintenance

    @app.post("/maintenance/settlements", response_model=SettlementRunResult, tags=["Maintenance"])
    def run_settlements(p: Platform = Depends(get_platform)) -> SettlementRunResult:
        return p.worker.run_pending()

    @app.post("/maintenance/expire-tiers", response_model=ExpirySweepResult, tags=["Maintenance"])
    def expire_tiers(p: Platform = Depends(get_platform)) -> ExpirySweepResult:
        return p.accounts.expire_tiers()

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
