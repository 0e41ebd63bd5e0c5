"""
Off-chain payment orchestration: invoices, invoice payments and keysend.

Each logical payment is tracked by a PaymentAttempt record keyed by its
payment id (the payment hash). The record moves through

    Created -> Submitted -> {Succeeded, Failed, Retrying}
    Retrying -> Submitted

until the attempt budget or the local deadline is exhausted. Succeeded and
Failed are terminal.

The deadline is local: when it expires the orchestrator stops waiting, but
the channel engine may still settle the attempt later. Such late outcomes are
recorded on the record and logged; they never reopen a terminal state. While
a timed-out attempt is unresolved its payment id cannot be submitted again,
and once it settles successfully the payment counts as paid.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum

from coincurve import PublicKey
from loguru import logger

from lampocore.bolt11 import (
    DEFAULT_INVOICE_FEATURES,
    DecodeError,
    Invoice,
    MalformedInvoice,
    currency_for,
    decode_invoice,
    encode_invoice,
)
from lampocore.errors import LampoError, PermanentError, TransientError, UnsupportedNetwork
from lampod.channel import ChannelEngine, PaymentOutcome, RouteParameters
from lampod.config import PaymentConfig
from lampowallet.wallet.keys import KeyManager

TIMEOUT_REASON = "timeout"


class PaymentError(LampoError):
    """Base class for payment failures."""


class AmountRequired(PaymentError, PermanentError):
    pass


class InvoiceExpired(PaymentError, PermanentError):
    pass


class WrongNetwork(PaymentError, PermanentError):
    pass


class InvalidDestination(PaymentError, PermanentError):
    pass


class PaymentInProgress(PaymentError, PermanentError):
    pass


class InvalidTransition(PaymentError, PermanentError):
    pass


class PaymentTimeout(PaymentError, TransientError):
    def __init__(self, payment_hash: bytes):
        self.payment_hash = payment_hash
        super().__init__(f"Payment {payment_hash.hex()} timed out")


class PaymentFailed(PaymentError, PermanentError):
    def __init__(self, result: PaymentResult):
        self.result = result
        super().__init__(
            f"Payment {result.payment_hash.hex()} failed after {result.attempts} "
            f"attempt(s): {result.failure_reason}"
        )


class PaymentStatus(str, Enum):
    CREATED = "created"
    SUBMITTED = "submitted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"


TERMINAL_STATES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED})

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.CREATED: frozenset({PaymentStatus.SUBMITTED}),
    PaymentStatus.SUBMITTED: frozenset(
        {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.RETRYING}
    ),
    PaymentStatus.RETRYING: frozenset({PaymentStatus.SUBMITTED, PaymentStatus.FAILED}),
    PaymentStatus.SUCCEEDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class PaymentResult:
    payment_id: bytes
    payment_hash: bytes
    status: PaymentStatus
    amount_msat: int
    attempts: int
    preimage: bytes | None = None
    fee_msat: int | None = None
    failure_reason: str | None = None
    late_outcome: PaymentOutcome | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED

    @property
    def timed_out(self) -> bool:
        return self.failure_reason == TIMEOUT_REASON


@dataclass
class PaymentAttempt:
    """Mutable record of one logical payment across all its attempts."""

    payment_id: bytes
    route: RouteParameters
    deadline: float
    status: PaymentStatus = PaymentStatus.CREATED
    attempts: int = 0
    preimage: bytes | None = None
    fee_msat: int | None = None
    failure_reason: str | None = None
    late_outcome: PaymentOutcome | None = None
    history: list[PaymentStatus] = field(default_factory=lambda: [PaymentStatus.CREATED])
    # Engine call abandoned at the deadline, until it resolves
    pending: asyncio.Future | None = field(default=None, repr=False, compare=False)

    @property
    def payment_hash(self) -> bytes:
        return self.route.payment_hash

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def awaiting_engine(self) -> bool:
        return self.pending is not None and not self.pending.done()

    @property
    def settled_late(self) -> bool:
        """True when the engine delivered the payment after it was reported failed."""
        outcome = self.late_outcome
        if outcome is None or not outcome.success:
            return False
        return outcome.preimage is None or (
            hashlib.sha256(outcome.preimage).digest() == self.payment_hash
        )

    def transition(self, new_status: PaymentStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Payment {self.payment_id.hex()}: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        self.history.append(new_status)

    def succeed(self, outcome: PaymentOutcome) -> None:
        self.transition(PaymentStatus.SUCCEEDED)
        self.preimage = outcome.preimage
        self.fee_msat = outcome.fee_msat

    def fail(self, reason: str) -> None:
        self.transition(PaymentStatus.FAILED)
        self.failure_reason = reason

    def result(self) -> PaymentResult:
        late = self.late_outcome
        if late is not None and self.settled_late:
            return PaymentResult(
                payment_id=self.payment_id,
                payment_hash=self.payment_hash,
                status=PaymentStatus.SUCCEEDED,
                amount_msat=self.route.amount_msat,
                attempts=self.attempts,
                preimage=late.preimage,
                fee_msat=late.fee_msat,
                late_outcome=late,
            )
        return PaymentResult(
            payment_id=self.payment_id,
            payment_hash=self.payment_hash,
            status=self.status,
            amount_msat=self.route.amount_msat,
            attempts=self.attempts,
            preimage=self.preimage,
            fee_msat=self.fee_msat,
            failure_reason=self.failure_reason,
            late_outcome=self.late_outcome,
        )


class PaymentOrchestrator:
    """
    Issues invoices and drives outbound payments through a channel engine.

    Concurrent payments are independent; the only shared state is the
    registry of attempt records.
    """

    def __init__(self, config: PaymentConfig, keys: KeyManager, engine: ChannelEngine):
        if keys.network != config.network:
            raise UnsupportedNetwork(keys.network, what="key manager")
        self.config = config
        self.keys = keys
        self.engine = engine
        self._payments: dict[bytes, PaymentAttempt] = {}

    async def generate_invoice(
        self,
        amount_msat: int | None = None,
        description: str = "",
        expiry_secs: int | None = None,
    ) -> Invoice:
        """
        Issue a signed invoice backed by a fresh preimage.

        Raises:
            UnsupportedNetwork: The configured network has no invoice currency
        """
        currency_for(self.config.network)
        if amount_msat is not None and amount_msat <= 0:
            raise ValueError(f"Invoice amount must be positive, got {amount_msat}")
        expiry = expiry_secs if expiry_secs is not None else self.config.default_invoice_expiry

        preimage, payment_hash = self.keys.new_preimage()
        payment_secret = await self.engine.register_inbound_payment(
            payment_hash=payment_hash,
            preimage=preimage,
            amount_msat=amount_msat,
            expiry=expiry,
        )

        invoice = Invoice(
            network=self.config.network,
            payment_hash=payment_hash,
            payee=self.keys.node_id,
            timestamp=int(time.time()),
            amount_msat=amount_msat,
            payment_secret=payment_secret,
            description=description,
            expiry=expiry,
            min_final_cltv_expiry=self.config.min_final_cltv_expiry_delta,
            features=DEFAULT_INVOICE_FEATURES,
        )
        encoded = encode_invoice(invoice, self.keys.sign_invoice)
        logger.info(
            f"Issued invoice {payment_hash.hex()} for "
            f"{'any amount' if amount_msat is None else f'{amount_msat} msat'}, expiry {expiry}s"
        )
        return invoice.model_copy(update={"encoded": encoded})

    def decode_invoice(self, text: str) -> Invoice:
        """
        Raises:
            MalformedInvoice: Checksum, structure or signature is invalid
        """
        return decode_invoice(text)

    async def pay_invoice(self, invoice_text: str, amount_msat: int | None = None) -> PaymentResult:
        """
        Pay a BOLT11 invoice.

        ``amount_msat`` is mandatory for invoices without an amount and
        ignored otherwise. Routing failures and timeouts are reported in the
        returned result; only invalid requests raise.

        Raises:
            MalformedInvoice, AmountRequired, WrongNetwork, InvoiceExpired,
            PaymentInProgress
        """
        invoice = self.decode_invoice(invoice_text)

        if invoice.amount_msat is None:
            if amount_msat is None:
                raise AmountRequired(
                    f"Invoice {invoice.payment_hash.hex()} has no amount and none was given"
                )
            if amount_msat <= 0:
                raise ValueError(f"Amount must be positive, got {amount_msat}")
            amount = amount_msat
        else:
            if amount_msat is not None and amount_msat != invoice.amount_msat:
                logger.info(
                    f"Ignoring amount override {amount_msat} msat, invoice fixes "
                    f"{invoice.amount_msat} msat"
                )
            amount = invoice.amount_msat

        if invoice.network != self.config.network:
            raise WrongNetwork(
                f"Invoice is for {invoice.network.value}, node runs on {self.config.network.value}"
            )
        if invoice.is_expired():
            raise InvoiceExpired(f"Invoice {invoice.payment_hash.hex()} expired at {invoice.expires_at}")

        route = RouteParameters(
            destination=invoice.payee,
            payment_hash=invoice.payment_hash,
            payment_secret=invoice.payment_secret,
            amount_msat=amount,
            final_cltv_expiry_delta=invoice.min_final_cltv_expiry,
            allow_mpp=invoice.supports_mpp,
            payment_id=invoice.payment_hash,
        )
        return await self._execute(route)

    async def keysend(
        self, destination: bytes, amount_msat: int, preimage: bytes | None = None
    ) -> bytes:
        """
        Send a spontaneous payment carrying its own preimage.

        A fresh preimage is generated on every call unless one is given.
        Since the payment id is the payment hash, retrying with the same
        preimage never creates a second logical payment: a payment that
        settled, even after its deadline, is not resent, and one whose
        timed-out attempt is still unresolved raises PaymentInProgress.

        Returns:
            The payment hash, SHA256 of the attached preimage

        Raises:
            InvalidDestination: ``destination`` is not a valid node id
            PaymentTimeout: The local deadline expired
            PaymentFailed: The channel engine could not deliver the payment
        """
        if len(destination) != 33:
            raise InvalidDestination(f"Node id must be 33 bytes, got {len(destination)}")
        try:
            PublicKey(destination)
        except ValueError as e:
            raise InvalidDestination(f"Invalid node id {destination.hex()}") from e
        if amount_msat <= 0:
            raise ValueError(f"Amount must be positive, got {amount_msat}")

        if preimage is None:
            preimage, payment_hash = self.keys.new_preimage()
        else:
            if len(preimage) != 32:
                raise ValueError("Preimage must be 32 bytes")
            payment_hash = hashlib.sha256(preimage).digest()

        route = RouteParameters(
            destination=destination,
            payment_hash=payment_hash,
            amount_msat=amount_msat,
            final_cltv_expiry_delta=self.config.keysend_final_cltv_expiry,
            allow_mpp=False,
            preimage=preimage,
            payment_id=payment_hash,
        )
        logger.info(f"Initialised keysend {payment_hash.hex()} of {amount_msat} msat")

        result = await self._execute(route)
        if result.succeeded:
            return payment_hash
        if result.timed_out:
            raise PaymentTimeout(payment_hash)
        raise PaymentFailed(result)

    def get_payment(self, payment_id: bytes) -> PaymentAttempt | None:
        return self._payments.get(payment_id)

    def list_payments(self) -> list[PaymentAttempt]:
        return list(self._payments.values())

    def reconcile(self, payment_id: bytes, outcome: PaymentOutcome) -> PaymentAttempt:
        """Record a channel engine resolution that arrived after the local deadline."""
        record = self._payments.get(payment_id)
        if record is None:
            raise KeyError(payment_id.hex())
        self._record_late_outcome(record, outcome)
        return record

    def _record_late_outcome(self, record: PaymentAttempt, outcome: PaymentOutcome) -> None:
        if not record.terminal:
            # Still being driven by _execute, which will see the outcome itself
            return
        record.late_outcome = outcome
        logger.warning(
            f"Payment {record.payment_id.hex()} resolved after it was reported "
            f"{record.status.value}: success={outcome.success}, reason={outcome.reason}"
        )

    def _late_resolution(self, record: PaymentAttempt, task: asyncio.Future) -> None:
        record.pending = None
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            outcome = PaymentOutcome(success=False, reason=str(error))
        else:
            outcome = task.result()
        self._record_late_outcome(record, outcome)

    def _claim(self, route: RouteParameters) -> PaymentAttempt:
        existing = self._payments.get(route.payment_id)
        if existing is not None and (not existing.terminal or existing.awaiting_engine):
            raise PaymentInProgress(f"Payment {route.payment_id.hex()} is still in flight")

        loop = asyncio.get_running_loop()
        record = PaymentAttempt(
            payment_id=route.payment_id,
            route=route,
            deadline=loop.time() + self.config.attempt_timeout,
        )
        # Re-inserted so the registry stays ordered by last submission
        self._payments.pop(route.payment_id, None)
        self._payments[route.payment_id] = record
        self._prune()
        return record

    def _prune(self) -> None:
        """Forget the oldest resolved payments beyond ``max_tracked_payments``."""
        excess = len(self._payments) - self.config.max_tracked_payments
        if excess <= 0:
            return
        resolved = [
            payment_id
            for payment_id, record in self._payments.items()
            if record.terminal and not record.awaiting_engine
        ]
        for payment_id in resolved[:excess]:
            del self._payments[payment_id]
        logger.debug(f"Pruned {min(excess, len(resolved))} resolved payment record(s)")

    async def _execute(self, route: RouteParameters) -> PaymentResult:
        existing = self._payments.get(route.payment_id)
        if existing is not None and existing.status == PaymentStatus.SUCCEEDED:
            logger.info(f"Payment {route.payment_id.hex()} already succeeded")
            return existing.result()
        if existing is not None and existing.settled_late:
            logger.info(f"Payment {route.payment_id.hex()} settled after its deadline, not resending")
            return existing.result()

        record = self._claim(route)
        loop = asyncio.get_running_loop()

        while True:
            record.transition(PaymentStatus.SUBMITTED)
            record.attempts += 1
            logger.debug(f"Payment {record.payment_id.hex()}: attempt {record.attempts}")

            task = asyncio.ensure_future(self.engine.send_payment(route))
            remaining = max(record.deadline - loop.time(), 0)
            try:
                outcome = await asyncio.wait_for(asyncio.shield(task), timeout=remaining)
            except asyncio.TimeoutError:
                record.fail(TIMEOUT_REASON)
                record.pending = task
                task.add_done_callback(lambda t, r=record: self._late_resolution(r, t))
                logger.warning(
                    f"Payment {record.payment_id.hex()} timed out after "
                    f"{self.config.attempt_timeout}s ({record.attempts} attempt(s))"
                )
                return record.result()
            except LampoError as e:
                outcome = PaymentOutcome(success=False, reason=str(e), retryable=e.retryable)
            except BaseException:
                record.fail("engine error")
                raise

            if outcome.success:
                if outcome.preimage is not None and (
                    hashlib.sha256(outcome.preimage).digest() != record.payment_hash
                ):
                    record.fail("preimage does not match payment hash")
                    logger.error(f"Payment {record.payment_id.hex()}: engine returned a wrong preimage")
                    return record.result()
                record.succeed(outcome)
                logger.info(
                    f"Payment {record.payment_id.hex()} succeeded: "
                    f"{route.amount_msat} msat, fee {outcome.fee_msat} msat"
                )
                return record.result()

            reason = outcome.reason or "routing failed"
            if (
                outcome.retryable
                and record.attempts < self.config.max_attempts
                and loop.time() < record.deadline
            ):
                record.transition(PaymentStatus.RETRYING)
                logger.info(f"Payment {record.payment_id.hex()} attempt failed ({reason}), retrying")
                continue

            record.fail(reason)
            logger.info(f"Payment {record.payment_id.hex()} failed: {reason}")
            return record.result()


__all__ = [
    "AmountRequired",
    "DecodeError",
    "InvalidDestination",
    "InvalidTransition",
    "InvoiceExpired",
    "MalformedInvoice",
    "PaymentAttempt",
    "PaymentError",
    "PaymentFailed",
    "PaymentInProgress",
    "PaymentOrchestrator",
    "PaymentResult",
    "PaymentStatus",
    "PaymentTimeout",
    "WrongNetwork",
]
