from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Optional

from wallet_ledger.config import Settings, settings as default_settings
from wallet_ledger.models import Account, FailureReason
from wallet_ledger.money import ZERO, to_decimal, to_positive_amount

from .models import AdmissionDecision, PayoutMethod, WithdrawableBalance


@dataclass(frozen=True)
class PlatformConfig:
    payout_enabled: bool = True
    minimum_payout_amount: Decimal = Decimal("50.00")
    block_payout_on_pending_order_payments: bool = True
    enabled_payout_methods: frozenset = field(default_factory=lambda: frozenset(PayoutMethod))
    hold_dues_when_allowed: bool = False

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None) -> "PlatformConfig":
        source = source or default_settings
        return cls(
            payout_enabled=source.PAYOUT_ENABLED,
            minimum_payout_amount=to_decimal(source.MIN_PAYOUT_AMOUNT),
            block_payout_on_pending_order_payments=source.BLOCK_PAYOUT_ON_PENDING_ORDERS,
            enabled_payout_methods=frozenset(PayoutMethod(m) for m in source.payout_methods_list),
            hold_dues_when_allowed=source.HOLD_DUES_WHEN_ALLOWED,
        )


@dataclass
class PayoutContext:
    account: Account
    amount: Optional[Decimal]
    method: PayoutMethod
    kyc_approved: bool
    unpaid_order_count: int
    pending_total: Decimal
    withdrawable: Decimal


@dataclass
class AdmissionRule:
    name: str
    reason: FailureReason
    blocks: Callable[[PayoutContext, PlatformConfig], bool]
    message: Optional[Callable[[PayoutContext, PlatformConfig], str]] = None

    def evaluate(self, context: PayoutContext, config: PlatformConfig) -> Optional[str]:
        if not self.blocks(context, config):
            return None
        return self.message(context, config) if self.message else self.reason.message


def dues_hold(account: Account, config: PlatformConfig) -> Decimal:
    if account.allow_payout_with_dues and not config.hold_dues_when_allowed:
        return ZERO
    return account.outstanding_dues


def withdrawable_balance(account: Account, pending_total: Decimal, config: PlatformConfig) -> WithdrawableBalance:
    hold = dues_hold(account, config)
    available = account.wallet_balance - pending_total - hold
    return WithdrawableBalance(
        user_id=account.user_id,
        wallet_balance=account.wallet_balance,
        pending_payouts_total=pending_total,
        dues_hold=hold,
        withdrawable_balance=max(available, ZERO),
    )


def _insufficient_message(context: PayoutContext, config: PlatformConfig) -> str:
    if context.pending_total > ZERO:
        return (
            f"Insufficient available balance. Pending payouts on hold: {context.pending_total}. "
            f"Available for payout: {context.withdrawable}"
        )
    return f"Insufficient wallet balance. Available for payout: {context.withdrawable}"


# Evaluated in order; the first rule that blocks decides the reason.
ADMISSION_RULES = [
    AdmissionRule(
        name="payouts_enabled",
        reason=FailureReason.PAYOUTS_DISABLED,
        blocks=lambda ctx, cfg: not cfg.payout_enabled,
    ),
    AdmissionRule(
        name="account_active",
        reason=FailureReason.ACCOUNT_INACTIVE,
        blocks=lambda ctx, cfg: not ctx.account.is_active,
    ),
    AdmissionRule(
        name="valid_amount",
        reason=FailureReason.INVALID_AMOUNT,
        blocks=lambda ctx, cfg: ctx.amount is None,
    ),
    AdmissionRule(
        name="method_enabled",
        reason=FailureReason.PAYOUT_METHOD_DISABLED,
        blocks=lambda ctx, cfg: ctx.method not in cfg.enabled_payout_methods,
    ),
    AdmissionRule(
        name="kyc_approved",
        reason=FailureReason.KYC_NOT_APPROVED,
        blocks=lambda ctx, cfg: not ctx.kyc_approved,
    ),
    AdmissionRule(
        name="no_pending_order_payments",
        reason=FailureReason.BLOCKED_BY_PENDING_ORDER_PAYMENTS,
        blocks=lambda ctx, cfg: cfg.block_payout_on_pending_order_payments and ctx.unpaid_order_count > 0,
        message=lambda ctx, cfg: (
            f"You have {ctx.unpaid_order_count} order(s) awaiting payment. "
            "Please complete or resolve these payments before requesting a payout."
        ),
    ),
    AdmissionRule(
        name="no_blocking_dues",
        reason=FailureReason.BLOCKED_BY_DUES,
        blocks=lambda ctx, cfg: ctx.account.outstanding_dues > ZERO and not ctx.account.allow_payout_with_dues,
        message=lambda ctx, cfg: (
            f"You have pending postpaid dues of {ctx.account.outstanding_dues}. "
            "Please clear them before requesting a payout."
        ),
    ),
    AdmissionRule(
        name="minimum_amount",
        reason=FailureReason.BELOW_MINIMUM_PAYOUT,
        blocks=lambda ctx, cfg: ctx.amount < cfg.minimum_payout_amount,
        message=lambda ctx, cfg: f"Minimum payout amount is {cfg.minimum_payout_amount}",
    ),
    AdmissionRule(
        name="sufficient_withdrawable",
        reason=FailureReason.INSUFFICIENT_BALANCE,
        blocks=lambda ctx, cfg: ctx.amount > ctx.withdrawable,
        message=_insufficient_message,
    ),
]


def can_request_payout(
    account: Account,
    amount,
    method: PayoutMethod,
    *,
    kyc_approved: bool,
    unpaid_order_count: int,
    pending_total: Decimal,
    config: PlatformConfig,
) -> AdmissionDecision:
    try:
        value: Optional[Decimal] = to_positive_amount(amount)
    except ValueError:
        value = None

    balance = withdrawable_balance(account, pending_total, config)
    context = PayoutContext(
        account=account,
        amount=value,
        method=method,
        kyc_approved=kyc_approved,
        unpaid_order_count=unpaid_order_count,
        pending_total=pending_total,
        withdrawable=balance.withdrawable_balance,
    )

    for rule in ADMISSION_RULES:
        message = rule.evaluate(context, config)
        if message is not None:
            return AdmissionDecision(
                allowed=False,
                reason=rule.reason,
                message=message,
                withdrawable_balance=balance.withdrawable_balance,
                pending_payouts_total=pending_total,
                outstanding_dues=account.outstanding_dues,
            )

    return AdmissionDecision(
        allowed=True,
        message="Payout can be requested",
        withdrawable_balance=balance.withdrawable_balance,
        pending_payouts_total=pending_total,
        outstanding_dues=account.outstanding_dues,
    )
