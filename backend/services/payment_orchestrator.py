"""
Payment Orchestrator

Handles:
    1. Pay URL creation (reusing a still-open checkout attempt)
    2. Callback / webhook verification via the gateway adapter
    3. Confirmation: PENDING → PAID with SUCCESS transaction, enrollment,
       progress init and notifications committed as one unit
    4. Admin refunds (REFUNDED transaction; order stays PAID)
    5. Expiry of stale checkout attempts and of abandoned PENDING orders

Idempotency is decided by the order's status: a PAID order turns every later
confirmation into a no-op. Every terminal transition goes through a
conditional UPDATE on payment_status = 'PENDING', so concurrent confirm,
cancel and expiry cannot both win.

This service owns its transactions and commits them itself.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Course, Order, PaymentTransaction, User, utcnow
from domain.constants import CURRENCY, REASON_EXPIRED, REASON_SUPERSEDED
from domain.enums import ConfirmationSource, PaymentStatus, TransactionStatus, UserRole
from domain.errors import (
    AlreadyPaidError,
    AuthorizationError,
    GatewayError,
    GatewayMismatchError,
    InvalidOrderStateError,
    NotFoundError,
    ValidationError,
)
from services import (
    coupon_service,
    enrollment_service,
    notification_service,
    order_service,
    progress_service,
)
from services.gateways import (
    ConfirmationOutcome,
    NormalizedPayment,
    get_adapter,
    parse_gateway,
)

logger = logging.getLogger(__name__)


@dataclass
class ConfirmationResult:
    outcome: ConfirmationOutcome
    order_code: Optional[str] = None
    order_id: Optional[int] = None
    payment_status: Optional[str] = None
    enrollment_id: Optional[int] = None
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (ConfirmationOutcome.CONFIRMED, ConfirmationOutcome.ALREADY_PAID)

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "orderCode": self.order_code,
            "orderId": self.order_id,
            "paymentStatus": self.payment_status,
            "enrollmentId": self.enrollment_id,
            "success": self.succeeded,
            "message": self.message,
        }


# ════════════════════════════════════════════════════════════════════
# Helpers
# ════════════════════════════════════════════════════════════════════


def _pending_attempt_is_fresh(txn: PaymentTransaction, now: datetime) -> bool:
    if not txn.created_at:
        return False
    return txn.created_at >= now - timedelta(minutes=settings.pending_payment_expiration_minutes)


async def _latest_transaction(
    db: AsyncSession, order_id: int, status: TransactionStatus, gateway: str | None = None
) -> PaymentTransaction | None:
    query = select(PaymentTransaction).where(
        PaymentTransaction.order_id == order_id,
        PaymentTransaction.status == status.value,
    )
    if gateway:
        query = query.where(PaymentTransaction.payment_gateway == gateway)
    res = await db.execute(
        query.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc()).limit(1)
    )
    return res.scalar_one_or_none()


async def _find_attempt(db: AsyncSession, order: Order, payment: NormalizedPayment) -> PaymentTransaction | None:
    """The checkout attempt a confirmation refers to (by txn_ref, else newest PENDING)."""
    if payment.txn_ref:
        res = await db.execute(
            select(PaymentTransaction).where(PaymentTransaction.transaction_id == payment.txn_ref)
        )
        txn = res.scalar_one_or_none()
        if txn is not None and txn.order_id == order.id:
            return txn
    return await _latest_transaction(db, order.id, TransactionStatus.PENDING, order.payment_gateway)


async def _unique_transaction_id(db: AsyncSession, preferred: str | None, fallback: str) -> str:
    for candidate in (preferred, fallback):
        if not candidate:
            continue
        res = await db.execute(
            select(PaymentTransaction.id).where(PaymentTransaction.transaction_id == candidate)
        )
        if res.scalar_one_or_none() is None:
            return candidate
    return f"{fallback}-{int(utcnow().timestamp() * 1000)}"


def _gateway_response(payment: NormalizedPayment) -> dict:
    return {
        **payment.raw,
        "gatewayTransactionId": payment.gateway_transaction_id,
        "resultCode": payment.result_code,
    }


async def _record_outcome(
    db: AsyncSession,
    order: Order,
    payment: NormalizedPayment,
    status: TransactionStatus,
    *,
    error_message: str | None = None,
    ip_address: str | None = None,
    update_attempt: bool = True,
) -> PaymentTransaction:
    """Settle the matching attempt with `status`, or insert a new row."""
    attempt = await _find_attempt(db, order, payment) if update_attempt else None
    if attempt is not None and attempt.status == TransactionStatus.PENDING.value:
        txn = attempt
    else:
        adapter = get_adapter(payment.gateway)
        txn = PaymentTransaction(
            order_id=order.id,
            transaction_id=await _unique_transaction_id(
                db,
                payment.txn_ref if attempt is None else None,
                adapter.generate_txn_ref(order.order_code, suffix=status.value.lower()),
            ),
            payment_gateway=payment.gateway.value,
            currency=CURRENCY,
        )
        db.add(txn)

    txn.status = status.value
    txn.amount = payment.amount
    txn.gateway_response = _gateway_response(payment)
    txn.error_message = error_message
    txn.ip_address = ip_address or txn.ip_address
    txn.updated_at = utcnow()
    await db.flush()
    return txn


async def _load_order_for_update(db: AsyncSession, order_code: str) -> Order | None:
    res = await db.execute(
        select(Order).where(Order.order_code == order_code).with_for_update()
    )
    return res.scalar_one_or_none()


async def _grant_access(db: AsyncSession, order: Order, *, reactivate: bool = True) -> tuple[int, bool]:
    """Enrollment + progress + enrollment notification. Idempotent."""
    enrollment, created = await enrollment_service.activate_for_order(db, order, reactivate=reactivate)
    if enrollment.status in enrollment_service.ACCESS_STATUSES:
        await progress_service.initialize_progress(db, enrollment)
    if created:
        course = await db.get(Course, order.course_id)
        notification_service.notify_enrollment_success(
            db,
            user_id=order.user_id,
            course_id=order.course_id,
            course_title=course.title if course else None,
        )
    return enrollment.id, created


# ════════════════════════════════════════════════════════════════════
# Pay URL
# ════════════════════════════════════════════════════════════════════


async def create_payment_url(
    db: AsyncSession,
    *,
    order_id: int,
    user_id: int,
    gateway: str,
    client_ip: str | None = None,
) -> dict:
    """Issue (or reuse) a pay URL for the user's PENDING order."""
    payment_gateway = parse_gateway(gateway)

    order = await db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order", str(order_id))
    if order.user_id != user_id:
        raise AuthorizationError("You can only pay for your own orders")
    if order.payment_gateway != payment_gateway.value:
        raise GatewayMismatchError(order.payment_gateway, payment_gateway.value)
    if order.payment_status == PaymentStatus.PAID.value:
        raise AlreadyPaidError(order.order_code)
    if order.payment_status != PaymentStatus.PENDING.value:
        raise InvalidOrderStateError(order.order_code, order.payment_status, "pay for")

    adapter = get_adapter(payment_gateway)
    adapter.ensure_configured()

    now = utcnow()
    existing = await _latest_transaction(db, order.id, TransactionStatus.PENDING, payment_gateway.value)
    if existing is not None and _pending_attempt_is_fresh(existing, now):
        pay_url = (existing.gateway_response or {}).get("payUrl")
        if pay_url:
            logger.info(f"  ♻️  Returning existing {payment_gateway.value} pay URL for {order.order_code}")
            return {
                "payUrl": pay_url,
                "gatewayPayload": existing.gateway_response,
                "transactionId": existing.transaction_id,
                "orderId": order.id,
                "orderCode": order.order_code,
                "amount": order.final_price,
                "gateway": payment_gateway.value,
                "reused": True,
            }

    course = await db.get(Course, order.course_id)
    txn_ref = adapter.generate_txn_ref(order.order_code)
    try:
        request = await adapter.build_payment_url(
            order,
            txn_ref=txn_ref,
            client_ip=client_ip,
            course_title=course.title if course else None,
        )
    except GatewayError as exc:
        if exc.status_code == 502:
            db.add(PaymentTransaction(
                order_id=order.id,
                transaction_id=txn_ref,
                payment_gateway=payment_gateway.value,
                amount=order.final_price,
                currency=CURRENCY,
                status=TransactionStatus.FAILED.value,
                gateway_response=exc.details or None,
                error_message=exc.message,
                ip_address=client_ip,
            ))
            await db.commit()
        raise

    await order_service.fail_pending_attempts(db, order.id, REASON_SUPERSEDED)
    txn = PaymentTransaction(
        order_id=order.id,
        transaction_id=request.txn_ref,
        payment_gateway=payment_gateway.value,
        amount=order.final_price,
        currency=CURRENCY,
        status=TransactionStatus.PENDING.value,
        gateway_response=request.payload,
        ip_address=client_ip,
        created_at=now,
    )
    db.add(txn)
    await db.commit()

    return {
        "payUrl": request.pay_url,
        "gatewayPayload": request.payload,
        "transactionId": txn.transaction_id,
        "orderId": order.id,
        "orderCode": order.order_code,
        "amount": order.final_price,
        "gateway": payment_gateway.value,
        "reused": False,
    }


# ════════════════════════════════════════════════════════════════════
# Confirmation
# ════════════════════════════════════════════════════════════════════


async def handle_callback(db: AsyncSession, gateway: str, raw: dict, *, client_ip: str | None = None) -> ConfirmationResult:
    """Browser return from the gateway. Informational for failures."""
    adapter = get_adapter(gateway)
    verification = adapter.verify_callback(raw)
    if not verification.valid:
        return ConfirmationResult(ConfirmationOutcome.INVALID_SIGNATURE, message=verification.reason)
    return await confirm_payment(
        db, verification.payment, source=ConfirmationSource.CALLBACK, ip_address=client_ip
    )


async def handle_webhook(db: AsyncSession, gateway: str, raw: dict, *, client_ip: str | None = None) -> ConfirmationResult:
    """Server-to-server IPN. Authoritative."""
    adapter = get_adapter(gateway)
    verification = adapter.verify_webhook(raw, client_ip=client_ip)
    if not verification.valid:
        return ConfirmationResult(ConfirmationOutcome.INVALID_SIGNATURE, message=verification.reason)
    return await confirm_payment(
        db, verification.payment, source=ConfirmationSource.WEBHOOK, ip_address=client_ip
    )


async def confirm_payment(
    db: AsyncSession,
    payment: NormalizedPayment,
    *,
    source: ConfirmationSource = ConfirmationSource.WEBHOOK,
    ip_address: str | None = None,
    _retry: bool = True,
) -> ConfirmationResult:
    """
    Apply a verified gateway confirmation to its order.

    Outcomes:
        ORDER_NOT_FOUND    unknown order code, nothing changes
        ALREADY_PAID       idempotent no-op (a missing enrollment is repaired)
        LATE_CONFIRMATION  order already FAILED; FAILED audit row recorded
        PAYMENT_FAILED     gateway reported failure (webhook fails the order)
        AMOUNT_MISMATCH    amount differs from final_price, nothing changes
        CONFIRMED          PENDING → PAID with all downstream effects
    """
    adapter = get_adapter(payment.gateway)
    logger.info(
        f"  📩 {payment.gateway.value} {source.value}: order={payment.order_code} "
        f"amount={payment.amount} result={payment.result_code}"
    )

    order = await _load_order_for_update(db, payment.order_code)
    if order is None:
        logger.warning(f"  {payment.gateway.value} {source.value} for unknown order: {payment.order_code}")
        await db.rollback()
        return ConfirmationResult(ConfirmationOutcome.ORDER_NOT_FOUND, order_code=payment.order_code)

    def result(outcome: ConfirmationOutcome, enrollment_id: int | None = None, message: str | None = None):
        return ConfirmationResult(
            outcome,
            order_code=order.order_code,
            order_id=order.id,
            payment_status=order.payment_status,
            enrollment_id=enrollment_id,
            message=message,
        )

    # ── Already settled ─────────────────────────────────────────────
    if order.payment_status == PaymentStatus.PAID.value:
        # Only a missing enrollment is repaired; a DROPPED one stays dropped
        enrollment_id, repaired = await _grant_access(db, order, reactivate=False)
        await db.commit()
        if repaired:
            logger.warning(f"  Repaired missing enrollment for paid order {order.order_code}")
        return result(ConfirmationOutcome.ALREADY_PAID, enrollment_id, "Order already paid")

    if order.payment_status == PaymentStatus.FAILED.value:
        logger.warning(
            f"  Late {source.value} for failed order {order.order_code} "
            f"(succeeded={payment.succeeded})"
        )
        await _record_outcome(
            db, order, payment, TransactionStatus.FAILED,
            error_message="Confirmation received after order failed",
            ip_address=ip_address,
            update_attempt=False,
        )
        await db.commit()
        return result(ConfirmationOutcome.LATE_CONFIRMATION, message="Order is no longer payable")

    # ── Gateway reported failure ────────────────────────────────────
    if not payment.succeeded:
        await _record_outcome(
            db, order, payment, TransactionStatus.FAILED,
            error_message=payment.message,
            ip_address=ip_address,
        )
        if source == ConfirmationSource.WEBHOOK:
            if await order_service.transition_pending(db, order, PaymentStatus.FAILED):
                notification_service.notify_payment_failed(db, order, payment.message)
                logger.info(f"  ❌ Order {order.order_code} failed ({payment.result_code})")
        await db.commit()
        return result(ConfirmationOutcome.PAYMENT_FAILED, message=payment.message)

    # ── Amount check ────────────────────────────────────────────────
    if not adapter.amounts_match(order.final_price, payment.amount):
        logger.warning(
            f"  ⚠️  Amount mismatch for {order.order_code}: "
            f"expected {order.final_price}, received {payment.amount}"
        )
        mismatch = result(
            ConfirmationOutcome.AMOUNT_MISMATCH,
            message=f"Expected {order.final_price}, received {payment.amount}",
        )
        await db.rollback()
        return mismatch

    # ── Success: one transaction for every effect ───────────────────
    order_code = order.order_code
    try:
        if not await order_service.transition_pending(db, order, PaymentStatus.PAID, paid_at=utcnow()):
            await db.rollback()
            if not _retry:
                raise InvalidOrderStateError(order_code, "settled", "confirm")
            logger.info(f"  Lost confirmation race for {order_code}; re-evaluating")
            return await confirm_payment(db, payment, source=source, ip_address=ip_address, _retry=False)

        txn = await _record_outcome(
            db, order, payment, TransactionStatus.SUCCESS, ip_address=ip_address
        )
        await order_service.fail_pending_attempts(
            db, order.id, REASON_SUPERSEDED, exclude_ids=(txn.id,)
        )
        enrollment_id, _ = await _grant_access(db, order)
        await coupon_service.apply_coupon_on_success(db, order)

        course = await db.get(Course, order.course_id)
        course_title = course.title if course else None
        notification_service.notify_payment_success(db, order, course_title)
        if course and course.instructor_id:
            buyer = await db.get(User, order.user_id)
            notification_service.notify_instructor_payment_received(
                db,
                order,
                instructor_id=course.instructor_id,
                course_title=course_title,
                buyer_name=buyer.full_name if buyer else None,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.error(f"  ❌ Confirmation of {order_code} rolled back", exc_info=True)
        raise

    logger.info(f"  ✅ Order {order_code} PAID via {payment.gateway.value} {source.value}")
    return result(ConfirmationOutcome.CONFIRMED, enrollment_id, "Payment confirmed")


# ════════════════════════════════════════════════════════════════════
# Refund
# ════════════════════════════════════════════════════════════════════


async def _reserve_refund(db: AsyncSession, order: Order, amount: Decimal) -> bool:
    """
    Conditionally add `amount` to the order's refunded_amount.

    Returns False when the order is no longer PAID or the amount would
    exceed final_price (row count 0). Concurrent refunds serialize here.
    """
    result = await db.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.payment_status == PaymentStatus.PAID.value,
            Order.refunded_amount + amount <= Order.final_price,
        )
        .values(refunded_amount=Order.refunded_amount + amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _release_refund(db: AsyncSession, order: Order, amount: Decimal) -> None:
    await db.execute(
        update(Order)
        .where(Order.id == order.id)
        .values(refunded_amount=Order.refunded_amount - amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def refund(
    db: AsyncSession,
    *,
    order_id: int,
    actor_id: int,
    actor_role: str,
    amount: Decimal | None = None,
    reason: str | None = None,
) -> dict:
    """
    Refund a PAID order (admin only).

    The amount is reserved on the order (and committed) before the gateway
    is called, so two concurrent refunds can never exceed what was paid.
    A gateway failure releases the reservation and records a FAILED row.
    Records a REFUNDED transaction. The order stays PAID and the enrollment
    is untouched.
    """
    if actor_role != UserRole.ADMIN.value:
        raise AuthorizationError("Only administrators can process refunds")

    res = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    order = res.scalar_one_or_none()
    if not order:
        raise NotFoundError("Order", str(order_id))
    if order.payment_status != PaymentStatus.PAID.value:
        raise InvalidOrderStateError(order.order_code, order.payment_status, "refund")

    success_txn = await _latest_transaction(db, order.id, TransactionStatus.SUCCESS)
    if success_txn is None:
        raise ValidationError("No successful transaction found for this order to refund")

    final_price = Decimal(order.final_price)
    requested = Decimal(amount) if amount is not None else final_price - Decimal(order.refunded_amount or 0)
    if requested <= 0:
        raise ValidationError("Refund amount must be greater than 0", field="amount")

    if not await _reserve_refund(db, order, requested):
        await db.refresh(order)
        if order.payment_status != PaymentStatus.PAID.value:
            raise InvalidOrderStateError(order.order_code, order.payment_status, "refund")
        remaining = final_price - Decimal(order.refunded_amount or 0)
        raise ValidationError(
            "Refund amount exceeds remaining paid amount",
            field="amount",
            details={"remaining": str(remaining), "requested": str(requested)},
        )

    adapter = get_adapter(order.payment_gateway)
    refund_ref = await _unique_transaction_id(
        db,
        adapter.generate_txn_ref(order.order_code, suffix="refund"),
        adapter.generate_txn_ref(order.order_code, suffix=f"refund-{secrets.token_hex(3)}"),
    )
    description = reason or f"Refund for order {order.order_code} by admin {actor_id}"
    await db.commit()
    await db.refresh(order)

    async def fail(message: str | None, raw: dict | None) -> None:
        await _release_refund(db, order, requested)
        db.add(PaymentTransaction(
            order_id=order.id,
            transaction_id=refund_ref,
            payment_gateway=order.payment_gateway,
            amount=requested,
            currency=CURRENCY,
            status=TransactionStatus.FAILED.value,
            gateway_response=raw,
            error_message=message,
        ))
        await db.commit()
        await db.refresh(order)

    try:
        outcome = await adapter.refund(
            order, success_txn, amount=requested, reason=description, refund_ref=refund_ref
        )
    except GatewayError as exc:
        await fail(exc.message, exc.details or None)
        raise

    if not outcome.succeeded:
        message = outcome.message or f"{order.payment_gateway} refund failed"
        await fail(message, outcome.raw)
        logger.error(f"  ❌ Refund failed for {order.order_code}: {message}")
        raise GatewayError(message, details={"orderCode": order.order_code})

    refund_txn = PaymentTransaction(
        order_id=order.id,
        transaction_id=refund_ref,
        payment_gateway=order.payment_gateway,
        amount=requested,
        currency=CURRENCY,
        status=TransactionStatus.REFUNDED.value,
        gateway_response={**outcome.raw, "manual": outcome.manual, "reason": description},
    )
    db.add(refund_txn)
    notification_service.notify_refund_processed(db, order, requested)
    await db.commit()

    refunded_total = Decimal(order.refunded_amount)
    logger.info(f"  ↩️  Refunded {requested} VND for {order.order_code} (admin {actor_id})")
    return {
        "order": order,
        "refundTransaction": refund_txn,
        "refundedTotal": refunded_total,
        "remaining": final_price - refunded_total,
        "manual": outcome.manual,
        "message": outcome.message or "Refund processed successfully",
    }


# ════════════════════════════════════════════════════════════════════
# Expiry
# ════════════════════════════════════════════════════════════════════


async def _stale_attempts(db: AsyncSession, cutoff: datetime) -> list[tuple[int, int]]:
    """(transaction id, order id) of PENDING attempts created before cutoff."""
    res = await db.execute(
        select(PaymentTransaction.id, PaymentTransaction.order_id).where(
            PaymentTransaction.status == TransactionStatus.PENDING.value,
            PaymentTransaction.created_at < cutoff,
        )
    )
    return [(txn_id, order_id) for txn_id, order_id in res.all()]


async def _expire_attempt(db: AsyncSession, txn_id: int, now: datetime) -> bool:
    """PENDING → FAILED for one attempt. False when a confirmation settled it first."""
    result = await db.execute(
        update(PaymentTransaction)
        .where(
            PaymentTransaction.id == txn_id,
            PaymentTransaction.status == TransactionStatus.PENDING.value,
        )
        .values(status=TransactionStatus.FAILED.value, error_message=REASON_EXPIRED, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


async def _orders_to_fail(db: AsyncSession, cutoff: datetime, touched: set[int]) -> list[int]:
    """
    PENDING orders with no open checkout attempt that either lost their
    last attempt in this sweep or were created before cutoff.
    """
    open_attempt = (
        select(PaymentTransaction.id)
        .where(
            PaymentTransaction.order_id == Order.id,
            PaymentTransaction.status == TransactionStatus.PENDING.value,
        )
        .exists()
    )
    res = await db.execute(
        select(Order.id).where(
            Order.payment_status == PaymentStatus.PENDING.value,
            or_(Order.id.in_(sorted(touched)), Order.created_at < cutoff),
            ~open_attempt,
        )
    )
    return list(res.scalars().all())


async def expire_stale_payments(db: AsyncSession, now: datetime | None = None) -> dict:
    """
    Fail checkout attempts older than expiration + grace, then fail the
    PENDING orders left without an open attempt. Orders older than the same
    cutoff are included even if nothing was expired for them (their only
    attempt was closed by a failed callback).

    Attempts and orders both move through conditional UPDATEs, so a
    confirmation that commits during the sweep always wins.
    """
    now = now or utcnow()
    cutoff = now - timedelta(
        minutes=settings.pending_payment_expiration_minutes + settings.pending_sweep_grace_minutes
    )

    expired = 0
    touched: set[int] = set()
    for txn_id, order_id in await _stale_attempts(db, cutoff):
        if await _expire_attempt(db, txn_id, now):
            expired += 1
            touched.add(order_id)

    failed_orders = 0
    for order_id in await _orders_to_fail(db, cutoff, touched):
        order = await db.get(Order, order_id)
        if order and await order_service.transition_pending(db, order, PaymentStatus.FAILED, note=REASON_EXPIRED):
            notification_service.notify_payment_failed(db, order, REASON_EXPIRED)
            failed_orders += 1

    await db.commit()
    if expired or failed_orders:
        logger.info(f"  ⌛ Expired {expired} payment attempts, failed {failed_orders} orders")
    return {"expiredAttempts": expired, "failedOrders": failed_orders}
