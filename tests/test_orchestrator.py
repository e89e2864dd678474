import asyncio
from decimal import Decimal

import httpx
import pytest

from stablepay.schemas import (
    BalanceCheckResult,
    PayoutDetails,
    PayoutResult,
    PreparedAuthorization,
    SettlementReceipt,
    TypedData,
)
from stablepay.services.conversion import calculate_quote
from stablepay.services.errors import (
    ServiceError,
    err_persistence_failed,
    err_quote_failed,
    err_settlement_failed,
)
from stablepay.services.orchestrator import (
    AmountChosen,
    AmountEntered,
    AttemptContext,
    BalanceReported,
    Cancelled,
    Completed,
    Converted,
    Failed,
    InvalidTransition,
    PaymentOrchestrator,
    QuoteReceived,
    Recorded,
    Scanned,
    StepFailed,
    Step,
    transition,
    validate_amount,
)
from stablepay.services.settlement import SettlementClient
from stablepay.upi import parse_and_validate_qr

CHAIN_ID = 421614
WALLET = "0x2222222222222222222222222222222222222222"
SIGNATURE = "0x" + "11" * 32 + "22" * 32 + "1b"


class StubSigner:
    address = WALLET

    def __init__(self, fail=False):
        self.fail = fail
        self.signed = []

    async def sign_typed_data(self, typed_data):
        if self.fail:
            raise RuntimeError("User rejected the request")
        self.signed.append(typed_data)
        return SIGNATURE


class StubStore:
    def __init__(self, fail_create=False):
        self.fail_create = fail_create
        self.records = {}
        self.updates = []

    async def create(self, record):
        if self.fail_create:
            raise err_persistence_failed()
        self.records["txn-1"] = record.model_copy(update={"id": "txn-1"})
        return "txn-1"

    async def update(self, transaction_id, changes):
        self.updates.append(changes)
        record = self.records[transaction_id].model_copy(update=changes.model_dump(exclude_unset=True))
        self.records[transaction_id] = record
        return record

    async def get(self, transaction_id):
        return self.records.get(transaction_id)


class StubConversion:
    def __init__(self, failures=0, echo=None):
        self.failures = failures
        self.echo = echo
        self.calls = []

    async def convert(self, inr_amount, chain_id):
        self.calls.append((inr_amount, chain_id))
        if self.failures:
            self.failures -= 1
            raise err_quote_failed("rate service down")
        return calculate_quote(self.echo or inr_amount, Decimal("83"), Decimal("0.5"), "Arbitrum Sepolia")


class StubBalance:
    def __init__(self, balance=Decimal("100")):
        self.balance = balance

    async def check(self, address, required, chain_id):
        return BalanceCheckResult(
            has_sufficient_balance=self.balance >= required,
            balance=self.balance,
            required=required,
        )


class StubSettlement:
    def __init__(self, receipt=None, error=None):
        self.receipt = receipt or SettlementReceipt(success=True, transaction_hash="0xhash")
        self.error = error
        self.prepared = []
        self.executed = []

    async def prepare(self, *, payer, recipient, token, amount, chain_id):
        self.prepared.append({"payer": payer, "recipient": recipient, "token": token, "amount": amount})
        return PreparedAuthorization(
            nonce="0x01",
            valid_after=0,
            valid_before=4102444800,
            typed_data=TypedData(domain={}, types={}, message={}),
        )

    async def execute(self, meta_transaction, merchant, chain_id):
        self.executed.append((meta_transaction, merchant))
        if self.error is not None:
            raise self.error
        return self.receipt


class StubPayout:
    def __init__(self, result=None):
        self.result = result or PayoutResult(
            success=True,
            payout=PayoutDetails(transfer_id="tr_1", status="PENDING"),
        )
        self.calls = []

    async def initiate(self, customer_id, amount, remarks):
        self.calls.append((customer_id, amount, remarks))
        return self.result


def make_orchestrator(parsed, **overrides):
    collaborators = {
        "signer": StubSigner(),
        "store": StubStore(),
        "conversion": StubConversion(),
        "balance": StubBalance(),
        "settlement": StubSettlement(),
        "payout": StubPayout(),
    }
    collaborators.update(overrides)
    steps = []
    orchestrator = PaymentOrchestrator(
        parsed,
        chain_id=CHAIN_ID,
        treasury_address="0x1111111111111111111111111111111111111111",
        max_amount=Decimal("25000"),
        on_step=steps.append,
        **collaborators,
    )
    return orchestrator, collaborators, steps


@pytest.mark.asyncio
async def test_full_payment_completes(dynamic_qr):
    orchestrator, stubs, steps = make_orchestrator(dynamic_qr)

    outcome = await orchestrator.process()

    assert outcome.success is True
    assert isinstance(outcome.state, Completed)
    assert outcome.transaction_hash == "0xhash"
    assert steps == ["Initiating payment...", "Processing blockchain transaction...", "Sending INR to beneficiary..."]

    stored = stubs["store"].records["txn-1"]
    assert stored.inr_amount == Decimal("250.00")
    assert stored.total_usd_to_pay == Decimal("3.512048")
    assert stored.wallet_address == WALLET
    assert stored.txn_hash == "0xhash"
    assert stored.is_success is True
    assert stored.payout_triggered is True
    assert stored.payout_status == "pending"
    assert stored.payout_transfer_id == "tr_1"

    meta, merchant = stubs["settlement"].executed[0]
    assert meta.signature.v == 27
    assert meta.value == "3.512048"
    assert merchant.pa == "shop@okaxis"
    assert merchant.am == "250.00"
    assert stubs["payout"].calls == [("shop@okaxis", Decimal("250.00"), "Pay Corner Shop")]


@pytest.mark.asyncio
async def test_amount_above_ceiling_stops_before_persistence(personal_qr):
    orchestrator, stubs, _ = make_orchestrator(personal_qr)

    outcome = await orchestrator.process("25001")

    assert isinstance(outcome.state, Failed)
    assert outcome.state.failed_step == Step.AMOUNT_CHOSEN
    assert outcome.state.code == "ERR_AMOUNT_INVALID"
    assert outcome.errors == ["Amount cannot exceed ₹25,000"]
    assert stubs["store"].records == {}
    assert stubs["conversion"].calls == []


@pytest.mark.asyncio
async def test_insufficient_balance_stops_before_settlement(dynamic_qr):
    orchestrator, stubs, _ = make_orchestrator(dynamic_qr, balance=StubBalance(Decimal("1")))

    outcome = await orchestrator.process()

    assert outcome.state.failed_step == Step.BALANCE_CHECKED
    assert outcome.state.code == "ERR_INSUFFICIENT_BALANCE"
    assert stubs["store"].records["txn-1"].is_success is False
    assert stubs["settlement"].prepared == []
    assert stubs["settlement"].executed == []


@pytest.mark.asyncio
async def test_payout_failure_keeps_settlement(dynamic_qr):
    payout = StubPayout(PayoutResult(success=False, error="Beneficiary not found"))
    orchestrator, stubs, _ = make_orchestrator(dynamic_qr, payout=payout)

    outcome = await orchestrator.process()

    assert outcome.success is False
    assert outcome.requires_reconciliation is True
    assert outcome.state.failed_step == Step.PAYOUT_CONFIRMED
    assert outcome.transaction_hash == "0xhash"

    stored = stubs["store"].records["txn-1"]
    assert stored.is_success is True
    assert stored.payout_triggered is True
    assert stored.payout_status == "failed"
    assert stored.payout_failure_reason == "Beneficiary not found"
    assert len(stubs["settlement"].executed) == 1


@pytest.mark.asyncio
async def test_settlement_error_skips_payout(dynamic_qr):
    settlement = StubSettlement(error=err_settlement_failed("execution reverted"))
    orchestrator, stubs, _ = make_orchestrator(dynamic_qr, settlement=settlement)

    outcome = await orchestrator.process()

    assert outcome.state.failed_step == Step.SETTLEMENT_CONFIRMED
    assert outcome.state.code == "ERR_SETTLEMENT_FAILED"
    assert outcome.errors == ["execution reverted"]
    assert outcome.requires_reconciliation is False
    assert stubs["payout"].calls == []
    assert stubs["store"].records["txn-1"].is_success is False


@pytest.mark.asyncio
async def test_unconfirmed_settlement_is_a_failure(dynamic_qr):
    settlement = StubSettlement(receipt=SettlementReceipt(success=False))
    orchestrator, stubs, _ = make_orchestrator(dynamic_qr, settlement=settlement)

    outcome = await orchestrator.process()

    assert outcome.state.failed_step == Step.SETTLEMENT_CONFIRMED
    assert outcome.errors == ["Settlement was not confirmed"]
    assert stubs["payout"].calls == []


def relay_client(execute_body):
    def handler(request):
        if request.url.path.endswith("prepare-meta-transaction"):
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {
                        "nonce": "0x01",
                        "validAfter": 0,
                        "validBefore": 4102444800,
                        "typedData": {"domain": {}, "types": {}, "message": {}},
                    },
                },
            )
        return httpx.Response(200, json=execute_body)

    return SettlementClient("http://backend.test", "secret", httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "execute_body",
    [
        {"success": False, "data": "reverted"},
        {"success": True, "data": {"transactionHash": 123}},
        ["not", "an", "object"],
    ],
)
async def test_malformed_settlement_response_fails_the_attempt(dynamic_qr, execute_body):
    orchestrator, stubs, _ = make_orchestrator(dynamic_qr, settlement=relay_client(execute_body))

    outcome = await orchestrator.process()

    assert isinstance(outcome.state, Failed)
    assert outcome.state.failed_step == Step.SETTLEMENT_CONFIRMED
    assert outcome.state.code == "ERR_SETTLEMENT_FAILED"
    assert outcome.errors == ["Malformed settlement response"]
    assert stubs["payout"].calls == []
    assert stubs["store"].records["txn-1"].is_success is False


@pytest.mark.asyncio
async def test_unexpected_settlement_error_fails_the_attempt(dynamic_qr):
    settlement = StubSettlement(error=RuntimeError("socket closed"))
    orchestrator, stubs, _ = make_orchestrator(dynamic_qr, settlement=settlement)

    outcome = await orchestrator.process()

    assert outcome.state.failed_step == Step.SETTLEMENT_CONFIRMED
    assert outcome.errors == ["Settlement failed: socket closed"]
    assert stubs["payout"].calls == []
    assert stubs["store"].records["txn-1"].is_success is False


@pytest.mark.asyncio
async def test_persistence_failure_does_not_block_payment(dynamic_qr):
    store = StubStore(fail_create=True)
    orchestrator, _, _ = make_orchestrator(dynamic_qr, store=store)

    outcome = await orchestrator.process()

    assert outcome.success is True
    assert outcome.record.id is None
    assert outcome.record.txn_hash == "0xhash"
    assert store.updates == []


@pytest.mark.asyncio
async def test_signature_rejection(dynamic_qr):
    orchestrator, stubs, _ = make_orchestrator(dynamic_qr, signer=StubSigner(fail=True))

    outcome = await orchestrator.process()

    assert outcome.state.failed_step == Step.AUTHORIZED
    assert outcome.state.code == "ERR_SIGNATURE_FAILED"
    assert stubs["settlement"].executed == []


@pytest.mark.asyncio
async def test_resubmission_is_rejected(dynamic_qr):
    orchestrator, stubs, _ = make_orchestrator(dynamic_qr)
    await orchestrator.process()

    with pytest.raises(ServiceError) as excinfo:
        await orchestrator.confirm()
    assert excinfo.value.code == "ERR_ALREADY_SUBMITTED"
    assert len(stubs["settlement"].executed) == 1


class SlowStore(StubStore):
    def __init__(self):
        super().__init__()
        self.created = 0

    async def create(self, record):
        self.created += 1
        await asyncio.sleep(0.01)
        return await super().create(record)


@pytest.mark.asyncio
async def test_overlapping_confirm_creates_one_record(dynamic_qr):
    store = SlowStore()
    orchestrator, stubs, _ = make_orchestrator(dynamic_qr, store=store)
    orchestrator.choose_amount()
    await orchestrator.quote()

    first, second = await asyncio.gather(orchestrator.confirm(), orchestrator.confirm(), return_exceptions=True)

    assert first.success is True
    assert isinstance(second, ServiceError)
    assert second.code == "ERR_ALREADY_SUBMITTED"
    assert store.created == 1
    assert len(stubs["settlement"].executed) == 1


@pytest.mark.asyncio
async def test_quote_failure_can_be_retried(personal_qr):
    orchestrator, stubs, _ = make_orchestrator(personal_qr, conversion=StubConversion(failures=1))

    orchestrator.choose_amount("100")
    state = await orchestrator.quote()
    assert isinstance(state, Failed)
    assert state.failed_step == Step.CONVERTED
    assert stubs["store"].records == {}

    orchestrator.choose_amount("120")
    state = await orchestrator.quote()
    assert isinstance(state, Converted)
    assert state.ctx.amount == Decimal("120")
    assert state.ctx.quote.inr_amount == Decimal("120")


@pytest.mark.asyncio
async def test_quote_for_another_amount_is_rejected(personal_qr):
    orchestrator, _, _ = make_orchestrator(personal_qr, conversion=StubConversion(echo=Decimal("99")))

    orchestrator.choose_amount("100")
    state = await orchestrator.quote()

    assert state.code == "ERR_QUOTE_FAILED"


@pytest.mark.asyncio
async def test_float_echo_is_pinned_to_chosen_amount(personal_qr):
    conversion = StubConversion(echo=Decimal("100.0000001"))
    orchestrator, _, _ = make_orchestrator(personal_qr, conversion=conversion)

    orchestrator.choose_amount("100.00")
    state = await orchestrator.quote()

    assert isinstance(state, Converted)
    assert state.ctx.quote.inr_amount == Decimal("100.00")


@pytest.mark.asyncio
async def test_qr_amount_wins_over_typed_amount(dynamic_qr):
    orchestrator, _, _ = make_orchestrator(dynamic_qr)

    state = orchestrator.choose_amount("5")

    assert isinstance(state, AmountChosen)
    assert state.ctx.amount == Decimal("250.00")


def test_invalid_qr_is_rejected():
    orchestrator, _, _ = make_orchestrator(parse_and_validate_qr("upi://pay?pn=Nobody"))

    state = orchestrator.choose_amount("10")

    assert state.failed_step == Step.AMOUNT_CHOSEN
    assert state.code == "ERR_BAD_PAYLOAD"


def test_foreign_currency_is_rejected():
    orchestrator, _, _ = make_orchestrator(parse_and_validate_qr("upi://pay?pa=shop@bank&am=10&cu=USD"))

    state = orchestrator.choose_amount()

    assert state.code == "ERR_CURRENCY_UNSUPPORTED"


@pytest.mark.asyncio
async def test_confirm_requires_a_quote(personal_qr):
    orchestrator, _, _ = make_orchestrator(personal_qr)
    orchestrator.choose_amount("10")

    with pytest.raises(InvalidTransition):
        await orchestrator.confirm()


@pytest.mark.asyncio
async def test_cancel_before_confirmation(personal_qr):
    orchestrator, stubs, _ = make_orchestrator(personal_qr)
    orchestrator.choose_amount("10")
    await orchestrator.quote()

    assert isinstance(orchestrator.cancel(), Cancelled)
    with pytest.raises(InvalidTransition):
        await orchestrator.confirm()
    assert stubs["store"].records == {}


@pytest.mark.asyncio
async def test_cancel_after_completion_is_rejected(dynamic_qr):
    orchestrator, _, _ = make_orchestrator(dynamic_qr)
    await orchestrator.process()

    with pytest.raises(InvalidTransition):
        orchestrator.cancel()


# --- pure transitions ------------------------------------------------------


def _quote(amount="10"):
    return calculate_quote(Decimal(amount), Decimal("83"), Decimal("0.5"), "Arbitrum Sepolia")


def test_transition_rejects_skipped_steps(personal_qr):
    ctx = AttemptContext(parsed=personal_qr)

    with pytest.raises(InvalidTransition):
        transition(Scanned(ctx), QuoteReceived(_quote()))
    with pytest.raises(InvalidTransition):
        transition(Scanned(ctx), BalanceReported(Decimal("5")))


def test_new_amount_drops_previous_quote(personal_qr):
    ctx = AttemptContext(parsed=personal_qr, amount=Decimal("10"), quote=_quote())

    state = transition(Converted(ctx), AmountEntered(Decimal("20")))

    assert isinstance(state, AmountChosen)
    assert state.ctx.quote is None
    assert state.ctx.amount == Decimal("20")


def test_quote_must_match_amount(personal_qr):
    ctx = AttemptContext(parsed=personal_qr, amount=Decimal("11"))

    with pytest.raises(InvalidTransition):
        transition(AmountChosen(ctx), QuoteReceived(_quote("10")))


def test_balance_comparison(personal_qr):
    quote = _quote()
    ctx = AttemptContext(parsed=personal_qr, amount=Decimal("10"), quote=quote, recorded=True)

    enough = transition(Recorded(ctx), BalanceReported(quote.total_usdc_amount))
    short = transition(Recorded(ctx), BalanceReported(quote.total_usdc_amount - Decimal("0.000001")))

    assert enough.step == Step.BALANCE_CHECKED
    assert isinstance(short, Failed)
    assert short.code == "ERR_INSUFFICIENT_BALANCE"


def test_terminal_states_do_not_move(personal_qr):
    done = Completed(AttemptContext(parsed=personal_qr))

    with pytest.raises(InvalidTransition):
        transition(done, StepFailed(Step.PAYOUT_CONFIRMED, "ERR_X", "late"))
    with pytest.raises(InvalidTransition):
        transition(done, AmountEntered(Decimal("1")))


def test_failure_after_record_is_final(personal_qr):
    failed = Failed(
        AttemptContext(parsed=personal_qr, recorded=True),
        failed_step=Step.CONVERTED,
        code="ERR_QUOTE_FAILED",
    )

    with pytest.raises(InvalidTransition):
        transition(failed, AmountEntered(Decimal("1")))


# --- amount rule -----------------------------------------------------------


@pytest.mark.parametrize(
    "amount, message",
    [
        (None, "Amount is required"),
        ("  ", "Amount is required"),
        ("abc", "Amount must be a positive number"),
        ("0", "Amount must be a positive number"),
        ("-3", "Amount must be a positive number"),
        (Decimal("NaN"), "Amount must be a positive number"),
        ("25000.01", "Amount cannot exceed ₹25,000"),
    ],
)
def test_validate_amount_rejects(amount, message):
    with pytest.raises(ServiceError) as excinfo:
        validate_amount(amount, Decimal("25000"))
    assert excinfo.value.code == "ERR_AMOUNT_INVALID"
    assert excinfo.value.message == message


def test_validate_amount_accepts_ceiling():
    assert validate_amount("25000", Decimal("25000")) == Decimal("25000")
    assert validate_amount(Decimal("0.01"), Decimal("25000")) == Decimal("0.01")
