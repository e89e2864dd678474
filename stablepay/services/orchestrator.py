"""Scan-to-pay orchestration.

The attempt is a tagged union of immutable states advanced only by :func:`transition`.
:class:`PaymentOrchestrator` performs the side effects (quote, persistence, balance,
signature, settlement, payout) and feeds their results back as events, so every
ordering rule lives in the transition table and can be tested without any network.

Step order::

    Scanned -> AmountChosen -> Converted -> Recorded -> BalanceChecked -> Authorized
      -> SettlementSubmitted -> SettlementConfirmed | SettlementFailed
      -> PayoutInitiated -> PayoutConfirmed | PayoutFailed -> Completed | Failed
"""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Callable, ClassVar, Union
from uuid import uuid4

from ..chains import get_usdc_address, is_valid_chain_id
from ..config import settings
from ..monitoring import record_payment_outcome
from ..schemas import (
    BeneficiaryDetails,
    ConversionResult,
    MerchantDetails,
    MetaTransaction,
    ParsedQrResponse,
    PayoutResult,
    SettlementReceipt,
    TransactionRecord,
    UpdateTransactionRequest,
)
from ..upi import parse_amount
from .conversion import ConversionClient, UsdcBalanceChecker
from .errors import (
    ServiceError,
    err_already_submitted,
    err_amount_invalid,
    err_bad_payload,
    err_currency_unsupported,
    err_insufficient_balance,
    err_payout_failed,
    err_quote_failed,
    err_settlement_failed,
    err_signature_failed,
    err_unsupported_chain,
)
from .payout import PayoutClient, clean_remarks, resolve_beneficiary_id
from .settlement import SettlementClient
from .signer import WalletSigner, split_signature
from .transactions import PAYOUT_FAILED, TransactionStore

logger = logging.getLogger("stablepay.orchestrator")

QUOTE_AMOUNT_TOLERANCE = Decimal("0.005")


class Step(str, enum.Enum):
    SCANNED = "scanned"
    AMOUNT_CHOSEN = "amount_chosen"
    CONVERTED = "converted"
    RECORDED = "recorded"
    BALANCE_CHECKED = "balance_checked"
    AUTHORIZED = "authorized"
    SETTLEMENT_SUBMITTED = "settlement_submitted"
    SETTLEMENT_CONFIRMED = "settlement_confirmed"
    SETTLEMENT_FAILED = "settlement_failed"
    PAYOUT_INITIATED = "payout_initiated"
    PAYOUT_CONFIRMED = "payout_confirmed"
    PAYOUT_FAILED = "payout_failed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AttemptContext:
    """Everything learned so far in one attempt."""

    parsed: ParsedQrResponse
    amount: Decimal | None = None
    quote: ConversionResult | None = None
    record_id: str | None = None
    recorded: bool = False
    balance: Decimal | None = None
    wallet_address: str | None = None
    authorization: MetaTransaction | None = None
    receipt: SettlementReceipt | None = None
    customer_id: str | None = None
    payout: PayoutResult | None = None


# --- states ----------------------------------------------------------------


@dataclass(frozen=True)
class _State:
    ctx: AttemptContext
    step: ClassVar[Step]
    terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class Scanned(_State):
    step = Step.SCANNED


@dataclass(frozen=True)
class AmountChosen(_State):
    step = Step.AMOUNT_CHOSEN


@dataclass(frozen=True)
class Converted(_State):
    step = Step.CONVERTED


@dataclass(frozen=True)
class Recorded(_State):
    step = Step.RECORDED


@dataclass(frozen=True)
class BalanceChecked(_State):
    step = Step.BALANCE_CHECKED


@dataclass(frozen=True)
class Authorized(_State):
    step = Step.AUTHORIZED


@dataclass(frozen=True)
class SettlementSubmitted(_State):
    step = Step.SETTLEMENT_SUBMITTED


@dataclass(frozen=True)
class SettlementConfirmed(_State):
    step = Step.SETTLEMENT_CONFIRMED


@dataclass(frozen=True)
class SettlementFailed(_State):
    step = Step.SETTLEMENT_FAILED
    reason: str = "Settlement failed"


@dataclass(frozen=True)
class PayoutInitiated(_State):
    step = Step.PAYOUT_INITIATED


@dataclass(frozen=True)
class PayoutConfirmed(_State):
    step = Step.PAYOUT_CONFIRMED


@dataclass(frozen=True)
class PayoutFailed(_State):
    step = Step.PAYOUT_FAILED
    reason: str = "Payout failed"


@dataclass(frozen=True)
class Completed(_State):
    step = Step.COMPLETED
    terminal = True


@dataclass(frozen=True)
class Failed(_State):
    """Terminal failure. ``failed_step`` is the step that could not be completed."""

    step = Step.FAILED
    terminal = True
    failed_step: Step = Step.SCANNED
    code: str = "ERR_UNKNOWN"
    message: str = ""
    requires_reconciliation: bool = False


@dataclass(frozen=True)
class Cancelled(_State):
    step = Step.CANCELLED
    terminal = True


PaymentState = Union[
    Scanned,
    AmountChosen,
    Converted,
    Recorded,
    BalanceChecked,
    Authorized,
    SettlementSubmitted,
    SettlementConfirmed,
    SettlementFailed,
    PayoutInitiated,
    PayoutConfirmed,
    PayoutFailed,
    Completed,
    Failed,
    Cancelled,
]


# --- events ----------------------------------------------------------------


@dataclass(frozen=True)
class AmountEntered:
    amount: Decimal


@dataclass(frozen=True)
class QuoteReceived:
    quote: ConversionResult


@dataclass(frozen=True)
class RecordCreated:
    record_id: str | None


@dataclass(frozen=True)
class BalanceReported:
    balance: Decimal


@dataclass(frozen=True)
class AuthorizationSigned:
    wallet_address: str
    authorization: MetaTransaction


@dataclass(frozen=True)
class SettlementSent:
    pass


@dataclass(frozen=True)
class SettlementResult:
    receipt: SettlementReceipt
    reason: str | None = None


@dataclass(frozen=True)
class PayoutSent:
    customer_id: str


@dataclass(frozen=True)
class PayoutResultReceived:
    result: PayoutResult


@dataclass(frozen=True)
class Finalize:
    pass


@dataclass(frozen=True)
class StepFailed:
    step: Step
    code: str
    message: str


@dataclass(frozen=True)
class CancelRequested:
    pass


PaymentEvent = Union[
    AmountEntered,
    QuoteReceived,
    RecordCreated,
    BalanceReported,
    AuthorizationSigned,
    SettlementSent,
    SettlementResult,
    PayoutSent,
    PayoutResultReceived,
    Finalize,
    StepFailed,
    CancelRequested,
]


class InvalidTransition(Exception):
    def __init__(self, state: PaymentState, event: PaymentEvent | str):
        self.state = state
        self.event = event
        name = event if isinstance(event, str) else type(event).__name__
        super().__init__(f"{name} is not valid in state {state.step.value}")


# --- transition table ------------------------------------------------------


def _failed(ctx: AttemptContext, step: Step, error: ServiceError, reconcile: bool = False) -> Failed:
    return Failed(ctx, failed_step=step, code=error.code, message=error.message, requires_reconciliation=reconcile)


def _enter_amount(state: _State, event: AmountEntered) -> PaymentState:
    # A new amount always invalidates the previous quote.
    return AmountChosen(replace(state.ctx, amount=event.amount, quote=None))


def _receive_quote(state: AmountChosen, event: QuoteReceived) -> PaymentState:
    if event.quote.inr_amount != state.ctx.amount:
        raise InvalidTransition(state, event)
    return Converted(replace(state.ctx, quote=event.quote))


def _create_record(state: Converted, event: RecordCreated) -> PaymentState:
    return Recorded(replace(state.ctx, record_id=event.record_id, recorded=True))


def _report_balance(state: Recorded, event: BalanceReported) -> PaymentState:
    ctx = replace(state.ctx, balance=event.balance)
    required = ctx.quote.total_usdc_amount
    if event.balance < required:
        return _failed(
            ctx,
            Step.BALANCE_CHECKED,
            err_insufficient_balance(f"Insufficient USDC balance. Have {event.balance}, need {required} USDC."),
        )
    return BalanceChecked(ctx)


def _sign(state: BalanceChecked, event: AuthorizationSigned) -> PaymentState:
    return Authorized(replace(state.ctx, wallet_address=event.wallet_address, authorization=event.authorization))


def _send_settlement(state: Authorized, event: SettlementSent) -> PaymentState:
    return SettlementSubmitted(state.ctx)


def _settle(state: SettlementSubmitted, event: SettlementResult) -> PaymentState:
    ctx = replace(state.ctx, receipt=event.receipt)
    if event.receipt.success and event.receipt.transaction_hash:
        return SettlementConfirmed(ctx)
    return SettlementFailed(ctx, reason=event.reason or "Settlement was not confirmed")


def _send_payout(state: SettlementConfirmed, event: PayoutSent) -> PaymentState:
    return PayoutInitiated(replace(state.ctx, customer_id=event.customer_id))


def _receive_payout(state: PayoutInitiated, event: PayoutResultReceived) -> PaymentState:
    ctx = replace(state.ctx, payout=event.result)
    if event.result.success:
        return PayoutConfirmed(ctx)
    return PayoutFailed(ctx, reason=event.result.error or "Payout initiation failed")


def _finalize(state: _State, event: Finalize) -> PaymentState:
    if isinstance(state, PayoutConfirmed):
        return Completed(state.ctx)
    if isinstance(state, SettlementFailed):
        return _failed(state.ctx, Step.SETTLEMENT_CONFIRMED, err_settlement_failed(state.reason))
    if isinstance(state, PayoutFailed):
        # Tokens already moved; the settlement stands and the gap is reconciled out of band.
        return _failed(state.ctx, Step.PAYOUT_CONFIRMED, err_payout_failed(state.reason), reconcile=True)
    raise InvalidTransition(state, event)


def _retryable_before_record(state: _State) -> bool:
    return (
        isinstance(state, Failed)
        and not state.ctx.recorded
        and state.failed_step in (Step.AMOUNT_CHOSEN, Step.CONVERTED)
    )


_TRANSITIONS: dict[tuple[type, type], Callable[..., PaymentState]] = {
    (Scanned, AmountEntered): _enter_amount,
    (AmountChosen, AmountEntered): _enter_amount,
    (Converted, AmountEntered): _enter_amount,
    (AmountChosen, QuoteReceived): _receive_quote,
    (Converted, RecordCreated): _create_record,
    (Recorded, BalanceReported): _report_balance,
    (BalanceChecked, AuthorizationSigned): _sign,
    (Authorized, SettlementSent): _send_settlement,
    (SettlementSubmitted, SettlementResult): _settle,
    (SettlementConfirmed, PayoutSent): _send_payout,
    (PayoutInitiated, PayoutResultReceived): _receive_payout,
    (PayoutConfirmed, Finalize): _finalize,
    (SettlementFailed, Finalize): _finalize,
    (PayoutFailed, Finalize): _finalize,
}

_CANCELLABLE = (Scanned, AmountChosen, Converted)


def transition(state: PaymentState, event: PaymentEvent) -> PaymentState:
    """Pure state transition. Raises :class:`InvalidTransition` rather than skipping a step."""

    if isinstance(event, StepFailed):
        if state.terminal and not _retryable_before_record(state):
            raise InvalidTransition(state, event)
        return Failed(state.ctx, failed_step=event.step, code=event.code, message=event.message)

    if isinstance(event, CancelRequested):
        if isinstance(state, _CANCELLABLE) or _retryable_before_record(state):
            return Cancelled(state.ctx)
        raise InvalidTransition(state, event)

    if isinstance(event, AmountEntered) and _retryable_before_record(state):
        return _enter_amount(state, event)

    handler = _TRANSITIONS.get((type(state), type(event)))
    if handler is None:
        raise InvalidTransition(state, event)
    return handler(state, event)


# --- amount rules ----------------------------------------------------------


def validate_amount(amount: str | Decimal | None, max_amount: Decimal | None = None) -> Decimal:
    """Apply the protocol amount rule plus the per-transaction ceiling."""

    ceiling = max_amount if max_amount is not None else settings.max_fiat_amount
    if amount is None or (isinstance(amount, str) and not amount.strip()):
        raise err_amount_invalid("Amount is required")
    value = amount if isinstance(amount, Decimal) else parse_amount(amount)
    if value is None or not value.is_finite() or value <= 0:
        raise err_amount_invalid("Amount must be a positive number")
    if value > ceiling:
        raise err_amount_invalid(f"Amount cannot exceed ₹{ceiling:,}")
    return value


def is_currency_supported(currency: str | None) -> bool:
    return (currency or settings.supported_currency).upper() == settings.supported_currency


# --- driver ----------------------------------------------------------------


@dataclass(slots=True)
class PaymentOutcome:
    state: PaymentState
    record: TransactionRecord | None
    transaction_hash: str | None = None
    payout: PayoutResult | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return isinstance(self.state, Completed)

    @property
    def requires_reconciliation(self) -> bool:
        return isinstance(self.state, Failed) and self.state.requires_reconciliation


class PaymentOrchestrator:
    """Drives one scan-to-pay attempt against the external collaborators.

    Collaborator failures never escape as exceptions; they become :class:`Failed`
    states. Only caller mistakes (calling a step out of order, re-submitting a
    settled attempt) raise.
    """

    def __init__(
        self,
        parsed: ParsedQrResponse,
        *,
        chain_id: int,
        signer: WalletSigner,
        store: TransactionStore,
        conversion: ConversionClient,
        balance: UsdcBalanceChecker,
        settlement: SettlementClient,
        payout: PayoutClient,
        beneficiary: BeneficiaryDetails | None = None,
        treasury_address: str | None = None,
        max_amount: Decimal | None = None,
        on_step: Callable[[str], None] | None = None,
    ):
        self.attempt_id = uuid4().hex
        self.chain_id = chain_id
        self.signer = signer
        self.store = store
        self.conversion = conversion
        self.balance = balance
        self.settlement = settlement
        self.payout = payout
        self.beneficiary = beneficiary
        self.treasury_address = treasury_address or settings.treasury_address
        self.max_amount = max_amount if max_amount is not None else settings.max_fiat_amount
        self.on_step = on_step
        self.state: PaymentState = Scanned(AttemptContext(parsed=parsed))
        self.record: TransactionRecord | None = None
        self._confirming = False

    # -- public steps --------------------------------------------------------

    def choose_amount(self, user_amount: str | Decimal | None = None) -> PaymentState:
        """Fix the fiat amount: the QR's own amount wins over what the user typed."""

        parsed = self.state.ctx.parsed
        try:
            if not parsed.is_valid:
                raise err_bad_payload("Invalid QR code data")
            if not is_currency_supported(parsed.data.currency_code):
                raise err_currency_unsupported(parsed.data.currency_code)
            amount = validate_amount(parsed.data.amount or user_amount, self.max_amount)
        except ServiceError as exc:
            return self._fail(Step.AMOUNT_CHOSEN, exc)
        return self._apply(AmountEntered(amount))

    async def quote(self) -> PaymentState:
        """Fetch a quote for the chosen amount. Nothing is persisted for a failed quote."""

        if not isinstance(self.state, AmountChosen):
            raise InvalidTransition(self.state, "quote")
        if not is_valid_chain_id(self.chain_id):
            return self._fail(Step.CONVERTED, err_unsupported_chain(self.chain_id))
        amount = self.state.ctx.amount
        try:
            result = await self.conversion.convert(amount, self.chain_id)
        except ServiceError as exc:
            return self._fail(Step.CONVERTED, exc)
        # Services echo the amount as a float; pin the quote to the exact Decimal.
        if abs(result.inr_amount - amount) > QUOTE_AMOUNT_TOLERANCE:
            return self._fail(Step.CONVERTED, err_quote_failed("Quote does not match the requested amount"))
        return self._apply(QuoteReceived(result.model_copy(update={"inr_amount": amount})))

    def cancel(self) -> PaymentState:
        """Discard the local draft. Only possible before anything was persisted."""

        self.state = transition(self.state, CancelRequested())
        logger.info("payment cancelled", extra={"attempt_id": self.attempt_id})
        record_payment_outcome("cancelled", self.state.step.value)
        return self.state

    async def confirm(self) -> PaymentOutcome:
        """Run persistence, balance check, signature, settlement and payout in order."""

        if self._confirming or (self.record is not None and self.record.txn_hash):
            raise err_already_submitted()
        if not isinstance(self.state, Converted):
            raise InvalidTransition(self.state, "confirm")

        # Set before the first await so an overlapping call cannot create a second record.
        self._confirming = True
        try:
            return await self._run_confirmed()
        finally:
            self._confirming = False

    async def _run_confirmed(self) -> PaymentOutcome:
        self._step("Initiating payment...")
        await self._persist_create()

        if not await self._check_balance():
            return self._outcome()

        self._step("Processing blockchain transaction...")
        if not await self._authorize():
            return self._outcome()

        await self._submit_settlement()
        if isinstance(self.state, SettlementFailed):
            self._apply(Finalize())
            return self._outcome()

        self._step("Sending INR to beneficiary...")
        await self._initiate_payout()
        self._apply(Finalize())
        return self._outcome()

    async def process(self, user_amount: str | Decimal | None = None) -> PaymentOutcome:
        """Convenience: choose amount, quote and confirm in one go."""

        if isinstance(self.choose_amount(user_amount), Failed):
            return self._outcome()
        if isinstance(await self.quote(), Failed):
            return self._outcome()
        return await self.confirm()

    # -- steps ---------------------------------------------------------------

    async def _persist_create(self) -> None:
        ctx = self.state.ctx
        self.record = TransactionRecord(
            upi_id=ctx.parsed.data.payee_address,
            merchant_name=ctx.parsed.data.payee_name or "Unknown Merchant",
            inr_amount=ctx.amount,
            total_usd_to_pay=ctx.quote.total_usdc_amount,
            chain_id=self.chain_id,
        )
        record_id: str | None = None
        try:
            record_id = await self.store.create(self.record)
        except ServiceError as exc:
            logger.warning(
                "transaction not stored; attempt continues unaudited",
                extra={"attempt_id": self.attempt_id, "code": exc.code},
            )
        except Exception:
            logger.exception("transaction store failed", extra={"attempt_id": self.attempt_id})
        self.record = self.record.model_copy(update={"id": record_id})
        self._apply(RecordCreated(record_id))

    async def _check_balance(self) -> bool:
        required = self.state.ctx.quote.total_usdc_amount
        try:
            result = await self.balance.check(self.signer.address, required, self.chain_id)
        except ServiceError as exc:
            self._fail(Step.BALANCE_CHECKED, exc)
            return False
        self._apply(BalanceReported(result.balance))
        return isinstance(self.state, BalanceChecked)

    async def _authorize(self) -> bool:
        ctx = self.state.ctx
        amount = ctx.quote.total_usdc_amount
        token = get_usdc_address(self.chain_id)
        payer = self.signer.address
        try:
            prepared = await self.settlement.prepare(
                payer=payer,
                recipient=self.treasury_address,
                token=token,
                amount=amount,
                chain_id=self.chain_id,
            )
        except ServiceError as exc:
            self._fail(Step.AUTHORIZED, exc)
            return False

        try:
            signature = await self.signer.sign_typed_data(prepared.typed_data)
            parts = split_signature(signature)
        except Exception as exc:  # wallet rejection or malformed signature
            logger.warning("signature failed", extra={"attempt_id": self.attempt_id, "error": str(exc)})
            self._fail(Step.AUTHORIZED, err_signature_failed())
            return False

        authorization = MetaTransaction(
            from_address=payer,
            to=self.treasury_address,
            value=str(amount),
            valid_after=prepared.valid_after,
            valid_before=prepared.valid_before,
            nonce=prepared.nonce,
            signature=parts,
            chain_id=self.chain_id,
        )
        self._apply(AuthorizationSigned(wallet_address=payer, authorization=authorization))
        return True

    async def _submit_settlement(self) -> None:
        ctx = self.state.ctx
        self._apply(SettlementSent())
        reason: str | None = None
        try:
            receipt = await self.settlement.execute(ctx.authorization, self._merchant_details(), self.chain_id)
        except ServiceError as exc:
            receipt = SettlementReceipt(success=False)
            reason = exc.message
        except Exception as exc:  # relay answered with something we cannot read
            logger.exception("settlement execution failed", extra={"attempt_id": self.attempt_id})
            receipt = SettlementReceipt(success=False)
            reason = f"Settlement failed: {exc}"
        self._apply(SettlementResult(receipt=receipt, reason=reason))

        was_success = isinstance(self.state, SettlementConfirmed)
        # The only place is_success ever flips to true.
        await self._persist_update(
            UpdateTransactionRequest(
                wallet_address=ctx.wallet_address,
                txn_hash=receipt.transaction_hash or None,
                is_success=was_success,
            )
        )

    async def _initiate_payout(self) -> None:
        ctx = self.state.ctx
        customer_id = resolve_beneficiary_id(self.beneficiary, ctx.parsed.data.payee_address)
        remarks = clean_remarks(ctx.parsed.data.payee_name)
        self._apply(PayoutSent(customer_id))

        result = await self.payout.initiate(customer_id, ctx.amount, remarks)
        self._apply(PayoutResultReceived(result))

        details = result.payout
        if result.success:
            status = (details.status if details and details.status else "initiated").lower()
        else:
            status = PAYOUT_FAILED
        await self._persist_update(
            UpdateTransactionRequest(
                payout_triggered=True,
                payout_transfer_id=details.transfer_id if details else None,
                payout_status=status,
                payout_failure_reason=None if result.success else (result.error or "Payout initiation failed"),
            )
        )

    async def _persist_update(self, changes: UpdateTransactionRequest) -> None:
        values = changes.model_dump(exclude_unset=True)
        self.record = self.record.model_copy(update=values)
        if self.record.id is None:
            return
        try:
            await self.store.update(self.record.id, changes)
        except ServiceError as exc:
            logger.warning(
                "transaction update not stored",
                extra={"attempt_id": self.attempt_id, "transaction_id": self.record.id, "code": exc.code},
            )
        except Exception:
            logger.exception(
                "transaction update failed",
                extra={"attempt_id": self.attempt_id, "transaction_id": self.record.id},
            )

    # -- helpers -------------------------------------------------------------

    def _merchant_details(self) -> MerchantDetails:
        data = self.state.ctx.parsed.data
        return MerchantDetails(
            pa=data.payee_address,
            pn=data.payee_name or "Merchant",
            am=f"{self.state.ctx.amount:.2f}",
            cu=settings.supported_currency,
            mc=data.merchant_category_code,
            tr=data.transaction_ref or f"TXN_{int(time.time() * 1000)}",
        )

    def _apply(self, event: PaymentEvent) -> PaymentState:
        previous = self.state.step
        self.state = transition(self.state, event)
        logger.info(
            "payment step",
            extra={"attempt_id": self.attempt_id, "from_step": previous.value, "to_step": self.state.step.value},
        )
        if isinstance(self.state, Completed):
            record_payment_outcome("completed", Step.COMPLETED.value)
        elif isinstance(self.state, Failed):
            self._log_failure(self.state)
        return self.state

    def _fail(self, step: Step, error: ServiceError) -> PaymentState:
        return self._apply(StepFailed(step=step, code=error.code, message=error.message))

    def _log_failure(self, state: Failed) -> None:
        outcome = "partial_failure" if state.requires_reconciliation else "failed"
        record_payment_outcome(outcome, state.failed_step.value)
        log = logger.error if state.requires_reconciliation else logger.warning
        log(
            "payment failed",
            extra={
                "attempt_id": self.attempt_id,
                "failed_step": state.failed_step.value,
                "code": state.code,
                "transaction_id": self.record.id if self.record else None,
                "requires_reconciliation": state.requires_reconciliation,
            },
        )

    def _step(self, message: str) -> None:
        if self.on_step is not None:
            self.on_step(message)

    def _outcome(self) -> PaymentOutcome:
        ctx = self.state.ctx
        errors = [self.state.message] if isinstance(self.state, Failed) and self.state.message else []
        return PaymentOutcome(
            state=self.state,
            record=self.record,
            transaction_hash=ctx.receipt.transaction_hash if ctx.receipt else None,
            payout=ctx.payout,
            errors=errors,
        )
