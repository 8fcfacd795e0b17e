from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from payouts.guard import PayoutGuard
from payouts.models import (
    AdmissionDecision,
    CancelPayoutRequest,
    CreatePayoutRequest,
    PayoutCheckRequest,
    PayoutRequest,
    PayoutResult,
    PayoutStatus,
    PayoutStatusChange,
    ProcessPayoutRequest,
    WithdrawableBalance,
)

from .config import configure_logging, settings
from .engine import LedgerEngine
from .errors import AccountNotFoundError
from .models import (
    Account,
    AdjustmentRequest,
    AuditReport,
    ConfigurePostpaidRequest,
    CreditWalletRequest,
    DebitWalletRequest,
    DrawCreditRequest,
    FailureReason,
    LedgerHistoryResponse,
    LedgerResult,
    OpenAccountRequest,
    PostpaidStatus,
    RepayPostpaidRequest,
    ReverseOrderRequest,
    SetActiveRequest,
)

configure_logging()

app = FastAPI(
    title="Wallet Ledger API",
    description="Wallet balance, postpaid credit and payout ledger for dropshipping storefronts",
    version="1.0.0",
)

if settings.cors_origins_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

ledger_engine = LedgerEngine()
payout_guard = PayoutGuard(ledger_engine)

STATUS_BY_REASON = {
    FailureReason.ACCOUNT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    FailureReason.PAYOUT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    FailureReason.ACCOUNT_EXISTS: status.HTTP_409_CONFLICT,
    FailureReason.IDEMPOTENCY_CONFLICT: status.HTTP_409_CONFLICT,
    FailureReason.INVALID_STATE_TRANSITION: status.HTTP_409_CONFLICT,
    FailureReason.NOT_PAYOUT_OWNER: status.HTTP_403_FORBIDDEN,
    FailureReason.STORAGE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_engine() -> LedgerEngine:
    return ledger_engine


def get_payout_guard() -> PayoutGuard:
    return payout_guard


def _raise_for(reason: Optional[FailureReason], message: str) -> None:
    reason = reason or FailureReason.INVALID_AMOUNT
    raise HTTPException(
        status_code=STATUS_BY_REASON.get(reason, status.HTTP_422_UNPROCESSABLE_ENTITY),
        detail={"reason": reason.value, "message": message, "retryable": reason.retryable},
    )


def _checked(result):
    if not result.success:
        _raise_for(result.reason, result.message)
    return result


def _account_not_found(user_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={
            "reason": FailureReason.ACCOUNT_NOT_FOUND.value,
            "message": f"Account {user_id} not found",
            "retryable": False,
        },
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": settings.APP_NAME}


# ----------------------------------------------------------------------
# Accounts
# ----------------------------------------------------------------------

@app.post("/accounts", response_model=LedgerResult, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def open_account(request: OpenAccountRequest, engine: LedgerEngine = Depends(get_engine)) -> LedgerResult:
    return _checked(engine.open_account(
        request.user_id,
        currency=request.currency,
        postpaid_enabled=request.postpaid_enabled,
        credit_limit=request.postpaid_credit_limit,
        due_cycle_days=request.postpaid_due_cycle_days,
        allow_payout_with_dues=request.allow_payout_with_dues,
    ))


@app.get("/accounts/{user_id}", response_model=Account, tags=["Accounts"])
def get_account(user_id: str, engine: LedgerEngine = Depends(get_engine)) -> Account:
    try:
        return engine.get_account(user_id)
    except AccountNotFoundError:
        raise _account_not_found(user_id)


@app.post("/accounts/{user_id}/active", response_model=LedgerResult, tags=["Accounts"])
def set_active(user_id: str, request: SetActiveRequest, engine: LedgerEngine = Depends(get_engine)) -> LedgerResult:
    return _checked(engine.set_active(user_id, request.active))


@app.get("/accounts/{user_id}/postpaid", response_model=PostpaidStatus, tags=["Postpaid"])
def get_postpaid_status(user_id: str, engine: LedgerEngine = Depends(get_engine)) -> PostpaidStatus:
    try:
        return engine.postpaid_status(user_id)
    except AccountNotFoundError:
        raise _account_not_found(user_id)


@app.put("/accounts/{user_id}/postpaid", response_model=LedgerResult, tags=["Postpaid"])
def configure_postpaid(
    user_id: str,
    request: ConfigurePostpaidRequest,
    engine: LedgerEngine = Depends(get_engine),
) -> LedgerResult:
    return _checked(engine.configure_postpaid(
        user_id,
        enabled=request.enabled,
        credit_limit=request.credit_limit,
        due_cycle_days=request.due_cycle_days,
        allow_payout_with_dues=request.allow_payout_with_dues,
    ))


# ----------------------------------------------------------------------
# Balance operations
# ----------------------------------------------------------------------

@app.post("/accounts/{user_id}/wallet/credit", response_model=LedgerResult, tags=["Wallet"])
def credit_wallet(user_id: str, request: CreditWalletRequest, engine: LedgerEngine = Depends(get_engine)) -> LedgerResult:
    return _checked(engine.credit_wallet(
        user_id, request.amount, request.source, idempotency_key=request.idempotency_key,
    ))


@app.post("/accounts/{user_id}/wallet/debit", response_model=LedgerResult, tags=["Wallet"])
def debit_wallet(user_id: str, request: DebitWalletRequest, engine: LedgerEngine = Depends(get_engine)) -> LedgerResult:
    return _checked(engine.debit_wallet(
        user_id, request.amount, request.order_id, idempotency_key=request.idempotency_key,
    ))


@app.post("/accounts/{user_id}/postpaid/draw", response_model=LedgerResult, tags=["Postpaid"])
def draw_postpaid_credit(user_id: str, request: DrawCreditRequest, engine: LedgerEngine = Depends(get_engine)) -> LedgerResult:
    return _checked(engine.draw_postpaid_credit(
        user_id, request.amount, request.order_id, idempotency_key=request.idempotency_key,
    ))


@app.post("/accounts/{user_id}/postpaid/repay", response_model=LedgerResult, tags=["Postpaid"])
def repay_postpaid(user_id: str, request: RepayPostpaidRequest, engine: LedgerEngine = Depends(get_engine)) -> LedgerResult:
    return _checked(engine.repay_postpaid(user_id, request.amount, idempotency_key=request.idempotency_key))


@app.post("/accounts/{user_id}/adjustments", response_model=LedgerResult, tags=["Admin"])
def admin_adjust(user_id: str, request: AdjustmentRequest, engine: LedgerEngine = Depends(get_engine)) -> LedgerResult:
    return _checked(engine.admin_adjust(
        user_id, request.delta, request.reason, request.admin_id, request.target,
        idempotency_key=request.idempotency_key,
    ))


@app.post("/accounts/{user_id}/orders/{order_id}/reverse", response_model=LedgerResult, tags=["Admin"])
def reverse_order_payment(
    user_id: str,
    order_id: str,
    request: ReverseOrderRequest,
    engine: LedgerEngine = Depends(get_engine),
) -> LedgerResult:
    return _checked(engine.reverse_order_payment(user_id, order_id, request.reason, request.performed_by))


@app.get("/accounts/{user_id}/transactions", response_model=LedgerHistoryResponse, tags=["Ledger"])
def list_transactions(
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    engine: LedgerEngine = Depends(get_engine),
) -> LedgerHistoryResponse:
    try:
        return engine.list_transactions(user_id, limit, offset)
    except AccountNotFoundError:
        raise _account_not_found(user_id)


@app.get("/accounts/{user_id}/audit", response_model=AuditReport, tags=["Ledger"])
def audit_account(user_id: str, engine: LedgerEngine = Depends(get_engine)) -> AuditReport:
    try:
        return engine.audit_account(user_id)
    except AccountNotFoundError:
        raise _account_not_found(user_id)


# ----------------------------------------------------------------------
# Payouts
# ----------------------------------------------------------------------

@app.get("/accounts/{user_id}/withdrawable", response_model=WithdrawableBalance, tags=["Payouts"])
def get_withdrawable(user_id: str, guard: PayoutGuard = Depends(get_payout_guard)) -> WithdrawableBalance:
    try:
        return guard.withdrawable(user_id)
    except AccountNotFoundError:
        raise _account_not_found(user_id)


@app.post("/accounts/{user_id}/payouts/check", response_model=AdmissionDecision, tags=["Payouts"])
def check_payout(
    user_id: str,
    request: PayoutCheckRequest,
    guard: PayoutGuard = Depends(get_payout_guard),
) -> AdmissionDecision:
    return guard.check_admission(
        user_id,
        request.amount,
        request.payment_method,
        kyc_approved=request.kyc_approved,
        unpaid_order_count=request.unpaid_order_count,
    )


@app.post("/accounts/{user_id}/payouts", response_model=PayoutResult, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def request_payout(
    user_id: str,
    request: CreatePayoutRequest,
    guard: PayoutGuard = Depends(get_payout_guard),
) -> PayoutResult:
    return _checked(guard.request_payout(
        user_id,
        request.amount,
        request.payment_details,
        kyc_approved=request.kyc_approved,
        unpaid_order_count=request.unpaid_order_count,
    ))


@app.get("/accounts/{user_id}/payouts", response_model=list[PayoutRequest], tags=["Payouts"])
def list_user_payouts(user_id: str, guard: PayoutGuard = Depends(get_payout_guard)) -> list[PayoutRequest]:
    return guard.list_for_user(user_id)


@app.get("/payouts", response_model=list[PayoutRequest], tags=["Payouts"])
def list_payouts(
    status_filter: Optional[PayoutStatus] = Query(default=None, alias="status"),
    guard: PayoutGuard = Depends(get_payout_guard),
) -> list[PayoutRequest]:
    return guard.list_all(status_filter)


@app.get("/payouts/{payout_id}", response_model=PayoutRequest, tags=["Payouts"])
def get_payout(payout_id: UUID, guard: PayoutGuard = Depends(get_payout_guard)) -> PayoutRequest:
    payout = guard.get(payout_id)
    if payout is None:
        _raise_for(FailureReason.PAYOUT_NOT_FOUND, f"Payout {payout_id} not found")
    return payout


@app.get("/payouts/{payout_id}/history", response_model=list[PayoutStatusChange], tags=["Payouts"])
def get_payout_history(payout_id: UUID, guard: PayoutGuard = Depends(get_payout_guard)) -> list[PayoutStatusChange]:
    if guard.get(payout_id) is None:
        _raise_for(FailureReason.PAYOUT_NOT_FOUND, f"Payout {payout_id} not found")
    return guard.history(payout_id)


@app.post("/payouts/{payout_id}/approve", response_model=PayoutResult, tags=["Payouts"])
def approve_payout(
    payout_id: UUID,
    request: ProcessPayoutRequest,
    guard: PayoutGuard = Depends(get_payout_guard),
) -> PayoutResult:
    return _checked(guard.approve(payout_id, request.admin_id, request.admin_notes))


@app.post("/payouts/{payout_id}/complete", response_model=PayoutResult, tags=["Payouts"])
def complete_payout(
    payout_id: UUID,
    request: ProcessPayoutRequest,
    guard: PayoutGuard = Depends(get_payout_guard),
) -> PayoutResult:
    return _checked(guard.complete(payout_id, request.admin_id, request.admin_notes))


@app.post("/payouts/{payout_id}/reject", response_model=PayoutResult, tags=["Payouts"])
def reject_payout(
    payout_id: UUID,
    request: ProcessPayoutRequest,
    guard: PayoutGuard = Depends(get_payout_guard),
) -> PayoutResult:
    return _checked(guard.reject(payout_id, request.admin_id, request.admin_notes))


@app.post("/payouts/{payout_id}/cancel", response_model=PayoutResult, tags=["Payouts"])
def cancel_payout(
    payout_id: UUID,
    request: CancelPayoutRequest,
    guard: PayoutGuard = Depends(get_payout_guard),
) -> PayoutResult:
    return _checked(guard.cancel(payout_id, request.user_id, request.reason))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
