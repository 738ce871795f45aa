"""Payment reconciliation saga.

Coordinates the gateway round trip with the order ledger:

    INTENT_CREATED -> SIGNATURE_VERIFIED -> ORDER_UPDATE_RETRYING -> RECONCILED
                                            ORDER_UPDATE_RETRYING -> UPDATE_FAILED_ESCALATED

Once a callback signature verifies, the money has moved. From that point no
failure is reported as a payment failure: the order update is retried with
backoff and, if it still cannot land, the attempt is escalated with its gateway
payment id preserved for manual reconciliation.
"""

import asyncio
import json
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Awaitable, Callable

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from orderpay.common import state_machine
from orderpay.common.config import settings
from orderpay.common.errors import (
    GatewayUnavailable,
    OrderAlreadyPaid,
    OrderNotFound,
    OrderPayError,
    PaymentAttemptNotFound,
    PaymentNotCaptured,
    ReconciliationNotPending,
    RetryExhausted,
    SignatureInvalid,
    StaleAttemptState,
)
from orderpay.common.logging import logger, order_id_ctx, payment_id_ctx
from orderpay.common.metrics import (
    payment_intents_total,
    payment_outcomes_total,
    reconciliation_escalations_total,
    signature_failures_total,
)
from orderpay.common.outbox import enqueue_event
from orderpay.common.retry import RetryPolicy, retry_async
from orderpay.common.state_machine import validate_transition
from orderpay.services.orders.models import Order
from orderpay.services.orders.schemas import OrderPaymentUpdate, UserContext
from orderpay.services.orders.service import OrderLedger
from orderpay.services.payments.gateway import RazorpayClient
from orderpay.services.payments.models import PaymentAttempt, PaymentTimeline
from orderpay.services.payments.schemas import (
    GatewayCallback,
    PaymentCapturedOrderUpdateFailed,
    PaymentIntentResponse,
    PaymentReconciled,
    VerifiedPayment,
)
from orderpay.services.sequencing.identifiers import business_now


GATEWAY_CAPTURED_STATUSES = ("captured", "authorized")


class PaymentReconciler:
    """Owns the payment attempt state machine and its link to the order ledger."""

    def __init__(
        self,
        session_factory,
        ledger: OrderLedger,
        gateway: RazorpayClient,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = business_now,
        spool_path: str | Path | None = None,
        currency: str | None = None,
        confirm_with_gateway: bool = True,
        service_name: str = "payments",
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.gateway = gateway
        self.policy = policy or RetryPolicy(
            max_attempts=settings.order_update_max_attempts,
            base_delay=settings.order_update_base_delay_seconds,
            backoff_multiplier=settings.order_update_backoff_multiplier,
        )
        self.sleep = sleep
        self.clock = clock
        self.spool_path = Path(spool_path or settings.reconciliation_spool_path)
        self.currency = currency or settings.payment_currency
        self.confirm_with_gateway = confirm_with_gateway
        self.service_name = service_name

    def _transition(self, db, attempt: PaymentAttempt, new_status: str, reason: str) -> None:
        """Apply one validated transition guarded by `(status, state_version)`."""

        validate_transition(attempt.status, new_status)
        from_status = attempt.status
        current_version = attempt.state_version
        result = db.execute(
            update(PaymentAttempt)
            .where(
                PaymentAttempt.attempt_id == attempt.attempt_id,
                PaymentAttempt.status == from_status,
                PaymentAttempt.state_version == current_version,
            )
            .values(
                status=new_status,
                state_version=current_version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleAttemptState(
                f"payment attempt {attempt.attempt_id} moved concurrently (expected {from_status} v{current_version})"
            )
        attempt.status = new_status
        attempt.state_version = current_version + 1
        db.add(
            PaymentTimeline(
                attempt_id=attempt.attempt_id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
            )
        )

    def _load_attempt(self, db, gateway_order_id: str) -> PaymentAttempt | None:
        return db.execute(
            select(PaymentAttempt).where(PaymentAttempt.gateway_order_id == gateway_order_id)
        ).scalar_one_or_none()

    def _mark_verified(self, db, attempt: PaymentAttempt, gateway_payment_id: str) -> None:
        if attempt.status in state_machine.CAPTURED_STATES:
            return
        attempt.gateway_payment_id = gateway_payment_id
        attempt.verified = True
        self._transition(db, attempt, state_machine.SIGNATURE_VERIFIED, reason="signature_verified")

    async def create_intent(self, order_id: str, user: UserContext) -> PaymentIntentResponse:
        """Open a gateway payment order for the order's rounded total.

        No retry here: a gateway failure surfaces as `GatewayUnavailable` and the
        customer restarts checkout.
        """

        order_id_ctx.set(order_id)
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None or order.placed_by != user.user_id:
                raise OrderNotFound(order_id)
            if order.status == "PAID":
                raise OrderAlreadyPaid(order_id)
            amount_minor = int((order.invoice_amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        if amount_minor <= 0:
            raise OrderPayError(f"order {order_id} has nothing to pay")

        gateway_order = await self.gateway.create_order(
            amount_minor,
            self.currency,
            receipt=order_id,
            notes={"orderId": order_id, "userId": user.user_id},
        )
        with self.session_factory() as db:
            attempt = PaymentAttempt(
                order_id=order_id,
                user_id=user.user_id,
                gateway_order_id=gateway_order.id,
                amount_minor=gateway_order.amount,
                currency=gateway_order.currency,
                verified=False,
                status=state_machine.INTENT_CREATED,
                state_version=0,
            )
            db.add(attempt)
            db.flush()
            db.add(
                PaymentTimeline(
                    attempt_id=attempt.attempt_id,
                    from_state=None,
                    to_state=state_machine.INTENT_CREATED,
                    reason="intent_created",
                )
            )
            db.commit()
        payment_intents_total.labels(service=self.service_name).inc()
        logger.info(
            "payment intent created order_id=%s gateway_order_id=%s amount_minor=%s",
            order_id,
            gateway_order.id,
            gateway_order.amount,
        )
        return PaymentIntentResponse(
            attempt_id=attempt.attempt_id,
            order_id=order_id,
            gateway_order_id=gateway_order.id,
            amount=gateway_order.amount,
            currency=gateway_order.currency,
            key_id=self.gateway.key_id,
        )

    def _reject_signature(self, callback: GatewayCallback, reason: str) -> SignatureInvalid:
        signature_failures_total.labels(service=self.service_name).inc()
        logger.warning(
            "suspicious payment callback rejected reason=%s gateway_order_id=%s payment_id=%s",
            reason,
            callback.gateway_order_id,
            callback.payment_id,
        )
        return SignatureInvalid(callback.gateway_order_id)

    async def verify(self, callback: GatewayCallback, user_id: str | None = None) -> VerifiedPayment:
        """Check the callback signature; never retried, never trusted on mismatch.

        With `user_id`, a correctly signed callback for another user's attempt is
        rejected as `PaymentAttemptNotFound` before anything is written.
        """

        payment_id_ctx.set(callback.payment_id)
        with self.session_factory() as db:
            attempt = self._load_attempt(db, callback.gateway_order_id)
        if attempt is None:
            raise self._reject_signature(callback, "unknown_gateway_order")
        if not self.gateway.verify_signature(callback.gateway_order_id, callback.payment_id, callback.signature):
            raise self._reject_signature(callback, "signature_mismatch")
        if user_id is not None and attempt.user_id != user_id:
            logger.warning(
                "payment callback for foreign attempt rejected gateway_order_id=%s caller=%s",
                callback.gateway_order_id,
                user_id,
            )
            raise PaymentAttemptNotFound(callback.gateway_order_id)
        order_id_ctx.set(attempt.order_id)

        if self.confirm_with_gateway and attempt.status not in state_machine.CAPTURED_STATES:
            await self._confirm_capture(attempt, callback.payment_id)

        verified = VerifiedPayment(
            attempt_id=attempt.attempt_id,
            order_id=attempt.order_id,
            gateway_order_id=attempt.gateway_order_id,
            gateway_payment_id=callback.payment_id,
            amount_minor=attempt.amount_minor,
            currency=attempt.currency,
        )
        try:
            with self.session_factory() as db:
                attempt = db.get(PaymentAttempt, attempt.attempt_id)
                self._mark_verified(db, attempt, callback.payment_id)
                db.commit()
        except (SQLAlchemyError, StaleAttemptState) as exc:
            # The order update path records the payment id again before escalating.
            logger.error("could not persist verified payment attempt_id=%s error=%s", verified.attempt_id, exc)
        logger.info("payment signature verified gateway_order_id=%s", callback.gateway_order_id)
        return verified

    async def _confirm_capture(self, attempt: PaymentAttempt, payment_id: str) -> None:
        """Ask the gateway for the payment status; only a definite non-capture fails."""

        try:
            payment = await self.gateway.fetch_payment(payment_id)
        except GatewayUnavailable as exc:
            logger.warning("payment status lookup unavailable, trusting signature payment_id=%s error=%s", payment_id, exc)
            return
        gateway_status = str(payment.get("status", ""))
        if gateway_status in GATEWAY_CAPTURED_STATUSES:
            return
        with self.session_factory() as db:
            current = db.get(PaymentAttempt, attempt.attempt_id)
            if current.status == state_machine.INTENT_CREATED:
                current.last_error = f"gateway_status:{gateway_status}"
                self._transition(db, current, state_machine.PAYMENT_FAILED, reason=f"gateway_status:{gateway_status}")
                db.commit()
                payment_outcomes_total.labels(
                    service=self.service_name, terminal_state=state_machine.PAYMENT_FAILED
                ).inc()
        raise PaymentNotCaptured(payment_id, gateway_status)

    def _write_order_update(self, verified: VerifiedPayment, update_req: OrderPaymentUpdate, reason: str) -> None:
        """One attempt at linking the payment to its order, all in one transaction."""

        with self.session_factory() as db:
            attempt = db.get(PaymentAttempt, verified.attempt_id, with_for_update=True)
            if attempt is None:
                raise PaymentAttemptNotFound(verified.attempt_id)
            self.ledger.apply_payment(
                db,
                attempt.order_id,
                verified.gateway_order_id,
                verified.gateway_payment_id,
                update_req,
                paid_at=self.clock(),
            )
            if attempt.status == state_machine.RECONCILED:
                db.commit()
                return
            self._mark_verified(db, attempt, verified.gateway_payment_id)
            if attempt.status == state_machine.SIGNATURE_VERIFIED:
                self._transition(db, attempt, state_machine.ORDER_UPDATE_RETRYING, reason="order_update_started")
            attempt.gateway_payment_id = verified.gateway_payment_id
            attempt.pending_update = update_req.model_dump(mode="json")
            attempt.last_error = None
            self._transition(db, attempt, state_machine.RECONCILED, reason=reason)
            enqueue_event(
                db,
                aggregate_type="payment",
                aggregate_id=attempt.attempt_id,
                topic="payments.reconciled",
                payload={
                    "order_id": attempt.order_id,
                    "gateway_order_id": verified.gateway_order_id,
                    "gateway_payment_id": verified.gateway_payment_id,
                    "amount_minor": verified.amount_minor,
                    "currency": verified.currency,
                },
            )
            db.commit()

    def _reconciled(self, verified: VerifiedPayment) -> PaymentReconciled:
        return PaymentReconciled(
            order_id=verified.order_id,
            attempt_id=verified.attempt_id,
            gateway_order_id=verified.gateway_order_id,
            gateway_payment_id=verified.gateway_payment_id,
        )

    async def apply_to_order(
        self, verified: VerifiedPayment, update_req: OrderPaymentUpdate
    ) -> PaymentReconciled | PaymentCapturedOrderUpdateFailed:
        """Link a verified payment to its order with bounded retry.

        Transient storage errors are retried with backoff; validation errors are
        not. Either way a failure here ends in `PaymentCapturedOrderUpdateFailed`.
        """

        payment_id_ctx.set(verified.gateway_payment_id)
        order_id_ctx.set(verified.order_id)
        try:
            with self.session_factory() as db:
                attempt = db.get(PaymentAttempt, verified.attempt_id)
                if attempt is None:
                    raise PaymentAttemptNotFound(verified.attempt_id)
                if (
                    attempt.status == state_machine.RECONCILED
                    and attempt.gateway_payment_id == verified.gateway_payment_id
                ):
                    logger.info("payment already reconciled, skipping attempt_id=%s", attempt.attempt_id)
                    return self._reconciled(verified)
                self._mark_verified(db, attempt, verified.gateway_payment_id)
                if attempt.status == state_machine.SIGNATURE_VERIFIED:
                    attempt.pending_update = update_req.model_dump(mode="json")
                    self._transition(db, attempt, state_machine.ORDER_UPDATE_RETRYING, reason="order_update_started")
                db.commit()
        except (SQLAlchemyError, StaleAttemptState) as exc:
            logger.warning("could not record order update start attempt_id=%s error=%s", verified.attempt_id, exc)

        attempts_made = 0

        async def attempt_once() -> None:
            nonlocal attempts_made
            attempts_made += 1
            self._write_order_update(verified, update_req, reason="order_updated")

        try:
            await retry_async(
                attempt_once,
                self.policy,
                retry_on=(SQLAlchemyError, StaleAttemptState),
                dependency="order_update",
                sleep=self.sleep,
            )
        except RetryExhausted as exc:
            return self._escalate(verified, update_req, exc.attempts, exc.last_error)
        except OrderPayError as exc:
            return self._escalate(verified, update_req, attempts_made, exc)

        payment_outcomes_total.labels(service=self.service_name, terminal_state=state_machine.RECONCILED).inc()
        logger.info("payment reconciled attempt_id=%s attempts=%s", verified.attempt_id, attempts_made)
        return self._reconciled(verified)

    async def handle_callback(
        self, callback: GatewayCallback, update_req: OrderPaymentUpdate, user_id: str | None = None
    ) -> PaymentReconciled | PaymentCapturedOrderUpdateFailed:
        verified = await self.verify(callback, user_id=user_id)
        return await self.apply_to_order(verified, update_req)

    def _escalate(
        self,
        verified: VerifiedPayment,
        update_req: OrderPaymentUpdate,
        attempts: int,
        error: BaseException,
    ) -> PaymentReconciled | PaymentCapturedOrderUpdateFailed:
        """Park a captured payment for manual reconciliation, durably."""

        error_text = f"{type(error).__name__}: {error}"[:500]
        channel = "database"
        try:
            with self.session_factory() as db:
                attempt = db.get(PaymentAttempt, verified.attempt_id)
                if attempt.status == state_machine.RECONCILED and attempt.gateway_payment_id == verified.gateway_payment_id:
                    # A concurrent duplicate callback already linked it.
                    return self._reconciled(verified)
                self._mark_verified(db, attempt, verified.gateway_payment_id)
                if attempt.status == state_machine.SIGNATURE_VERIFIED:
                    self._transition(db, attempt, state_machine.ORDER_UPDATE_RETRYING, reason="order_update_started")
                if attempt.status == state_machine.ORDER_UPDATE_RETRYING:
                    self._transition(db, attempt, state_machine.UPDATE_FAILED_ESCALATED, reason="order_update_failed")
                if attempt.status == state_machine.RECONCILED:
                    # Order already paid by another payment; park this one beside it.
                    attempt.unlinked_payment_id = verified.gateway_payment_id
                else:
                    attempt.gateway_payment_id = attempt.gateway_payment_id or verified.gateway_payment_id
                    attempt.pending_update = update_req.model_dump(mode="json")
                attempt.last_error = error_text
                enqueue_event(
                    db,
                    aggregate_type="payment",
                    aggregate_id=attempt.attempt_id,
                    topic="payments.reconciliation_required",
                    payload={
                        "order_id": verified.order_id,
                        "gateway_order_id": verified.gateway_order_id,
                        "gateway_payment_id": verified.gateway_payment_id,
                        "amount_minor": verified.amount_minor,
                        "error": error_text,
                    },
                )
                db.commit()
        except (SQLAlchemyError, StaleAttemptState, ValueError) as exc:
            logger.error("escalation write failed attempt_id=%s error=%s", verified.attempt_id, exc)
            channel = self._spool(verified, update_req, error_text)

        reconciliation_escalations_total.labels(service=self.service_name, channel=channel).inc()
        payment_outcomes_total.labels(
            service=self.service_name, terminal_state=state_machine.UPDATE_FAILED_ESCALATED
        ).inc()
        logger.critical(
            "payment captured but order update failed order_id=%s gateway_payment_id=%s attempts=%s channel=%s error=%s",
            verified.order_id,
            verified.gateway_payment_id,
            attempts,
            channel,
            error_text,
        )
        return PaymentCapturedOrderUpdateFailed(
            order_id=verified.order_id,
            attempt_id=verified.attempt_id,
            gateway_order_id=verified.gateway_order_id,
            gateway_payment_id=verified.gateway_payment_id,
            attempts=attempts,
            error=error_text,
            durable_channel=channel,
            message=(
                "Payment successful but order update failed. "
                f"Please contact support with your payment ID: {verified.gateway_payment_id}"
            ),
        )

    def _spool(self, verified: VerifiedPayment, update_req: OrderPaymentUpdate, error_text: str) -> str:
        """Append the captured payment to the local spool file; returns the channel used."""

        record = {
            **verified.model_dump(),
            "update": update_req.model_dump(mode="json"),
            "error": error_text,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.spool_path.parent.mkdir(parents=True, exist_ok=True)
            with self.spool_path.open("a", encoding="utf-8") as spool:
                spool.write(json.dumps(record) + "\n")
        except OSError as exc:
            logger.critical("reconciliation spool unavailable record=%s error=%s", json.dumps(record), exc)
            return "log"
        return "spool"

    def abandon(self, gateway_order_id: str, user_id: str) -> PaymentAttempt:
        """Customer closed the checkout modal; the order row is never touched."""

        with self.session_factory() as db:
            attempt = self._load_attempt(db, gateway_order_id)
            if attempt is None or attempt.user_id != user_id:
                raise PaymentAttemptNotFound(gateway_order_id)
            if attempt.status != state_machine.INTENT_CREATED:
                logger.info("abandon ignored gateway_order_id=%s status=%s", gateway_order_id, attempt.status)
                return attempt
            self._transition(db, attempt, state_machine.ABANDONED, reason="checkout_dismissed")
            db.commit()
        payment_outcomes_total.labels(service=self.service_name, terminal_state=state_machine.ABANDONED).inc()
        return attempt

    def record_failure(self, gateway_order_id: str, reason: str, user_id: str | None = None) -> PaymentAttempt:
        """Gateway reported a failed payment; only an open intent can fail."""

        with self.session_factory() as db:
            attempt = self._load_attempt(db, gateway_order_id)
            if attempt is None or (user_id is not None and attempt.user_id != user_id):
                raise PaymentAttemptNotFound(gateway_order_id)
            if attempt.status != state_machine.INTENT_CREATED:
                logger.info("failure report ignored gateway_order_id=%s status=%s", gateway_order_id, attempt.status)
                return attempt
            attempt.last_error = reason[:500]
            self._transition(db, attempt, state_machine.PAYMENT_FAILED, reason=f"gateway_failed:{reason[:100]}")
            db.commit()
        payment_outcomes_total.labels(service=self.service_name, terminal_state=state_machine.PAYMENT_FAILED).inc()
        return attempt

    def list_escalations(self, limit: int = 100) -> list[PaymentAttempt]:
        """Attempts needing an operator: failed order updates and extra captures on paid orders."""

        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PaymentAttempt)
                    .where(
                        or_(
                            PaymentAttempt.status == state_machine.UPDATE_FAILED_ESCALATED,
                            PaymentAttempt.unlinked_payment_id.is_not(None),
                        )
                    )
                    .order_by(PaymentAttempt.updated_at)
                    .limit(limit)
                ).scalars()
            )

    def resolve_escalation(self, attempt_id: str) -> PaymentReconciled:
        """Operator retry: re-apply the stored order update once.

        On an already reconciled attempt this acknowledges an extra captured
        payment that the operator refunded or linked by hand.
        """

        with self.session_factory() as db:
            attempt = db.get(PaymentAttempt, attempt_id)
            if attempt is None:
                raise PaymentAttemptNotFound(attempt_id)
            if attempt.status != state_machine.UPDATE_FAILED_ESCALATED:
                if attempt.status == state_machine.RECONCILED:
                    if attempt.unlinked_payment_id:
                        logger.info(
                            "unlinked payment acknowledged attempt_id=%s gateway_payment_id=%s",
                            attempt_id,
                            attempt.unlinked_payment_id,
                        )
                        attempt.unlinked_payment_id = None
                        db.commit()
                    return PaymentReconciled(
                        order_id=attempt.order_id,
                        attempt_id=attempt.attempt_id,
                        gateway_order_id=attempt.gateway_order_id,
                        gateway_payment_id=attempt.gateway_payment_id,
                    )
                raise ReconciliationNotPending(f"payment attempt {attempt_id} is {attempt.status}")
            verified = VerifiedPayment(
                attempt_id=attempt.attempt_id,
                order_id=attempt.order_id,
                gateway_order_id=attempt.gateway_order_id,
                gateway_payment_id=attempt.gateway_payment_id,
                amount_minor=attempt.amount_minor,
                currency=attempt.currency,
            )
            update_req = OrderPaymentUpdate.model_validate(attempt.pending_update or {})
        self._write_order_update(verified, update_req, reason="operator_resolved")
        payment_outcomes_total.labels(service=self.service_name, terminal_state=state_machine.RECONCILED).inc()
        logger.info("escalated payment resolved attempt_id=%s", attempt_id)
        return self._reconciled(verified)
