"""
VNPay gateway adapter.

Protocol (VNPay Payment API v2.1.0):
    - Pay URL: redirect the buyer to VNPAY_URL with vnp_* query params.
    - Signature: HMAC-SHA512 (hash secret) over the vnp_* params sorted by key,
      each value quote_plus-encoded, joined with '&'. vnp_SecureHash and
      vnp_SecureHashType are excluded from the signed data.
    - vnp_Amount is sent in hundredths (amount × 100).
    - Success: vnp_ResponseCode == "00" (and vnp_TransactionStatus == "00"
      when present).
    - IPN answers JSON {"RspCode": ..., "Message": ...}.

Refunds are recorded locally and settled manually in the VNPay merchant portal.
"""
import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from urllib.parse import quote_plus

from config import settings
from domain.enums import ConfirmationSource, PaymentGateway
from domain.errors import VerificationError
from services.gateways import (
    ConfirmationOutcome,
    GatewayAdapter,
    NormalizedPayment,
    PaymentRequest,
    RefundOutcome,
    order_code_from_txn_ref,
    to_decimal,
)

logger = logging.getLogger(__name__)

# VNPay timestamps are Vietnam local time
VN_TZ = timezone(timedelta(hours=7))
SUCCESS_CODE = "00"
HASH_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")

IPN_RESPONSES = {
    ConfirmationOutcome.CONFIRMED: ("00", "Confirm Success"),
    ConfirmationOutcome.PAYMENT_FAILED: ("00", "Confirm Success"),
    ConfirmationOutcome.ALREADY_PAID: ("02", "Order already confirmed"),
    ConfirmationOutcome.LATE_CONFIRMATION: ("02", "Order already confirmed"),
    ConfirmationOutcome.ORDER_NOT_FOUND: ("01", "Order not found"),
    ConfirmationOutcome.AMOUNT_MISMATCH: ("04", "Invalid amount"),
    ConfirmationOutcome.INVALID_SIGNATURE: ("97", "Invalid Checksum"),
}


def build_sign_data(params: dict) -> str:
    """Canonical string VNPay signs: sorted vnp_* params, quote_plus values."""
    items = sorted(
        (k, v) for k, v in params.items()
        if k.startswith("vnp_") and k not in HASH_FIELDS and v is not None
    )
    return "&".join(f"{k}={quote_plus(str(v))}" for k, v in items)


def sign(params: dict, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        build_sign_data(params).encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()


def format_vnp_date(moment: datetime) -> str:
    return moment.astimezone(VN_TZ).strftime("%Y%m%d%H%M%S")


class VNPayAdapter(GatewayAdapter):
    gateway = PaymentGateway.VNPAY

    def missing_settings(self) -> list[str]:
        required = {
            "VNPAY_TMN_CODE": settings.vnpay_tmn_code,
            "VNPAY_HASH_SECRET": settings.vnpay_hash_secret,
            "VNPAY_URL": settings.vnpay_url,
            "VNPAY_RETURN_URL": settings.vnpay_return_url,
        }
        return [name for name, value in required.items() if not value]

    async def build_payment_url(
        self,
        order,
        *,
        txn_ref: str,
        client_ip: str | None = None,
        course_title: str | None = None,
    ) -> PaymentRequest:
        self.ensure_configured()
        self.check_order_gateway(order)

        now = datetime.now(timezone.utc)
        expires = now + timedelta(minutes=settings.pending_payment_expiration_minutes)
        params = {
            "vnp_Version": settings.vnpay_version,
            "vnp_Command": "pay",
            "vnp_TmnCode": settings.vnpay_tmn_code,
            "vnp_Amount": str(int(Decimal(order.final_price) * 100)),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": txn_ref,
            "vnp_OrderInfo": f"Thanh toan don hang {order.order_code}",
            "vnp_OrderType": "other",
            "vnp_Locale": settings.vnpay_locale,
            "vnp_ReturnUrl": settings.vnpay_return_url,
            "vnp_IpAddr": client_ip or "127.0.0.1",
            "vnp_CreateDate": format_vnp_date(now),
            "vnp_ExpireDate": format_vnp_date(expires),
        }
        secure_hash = sign(params, settings.vnpay_hash_secret)
        pay_url = f"{settings.vnpay_url}?{build_sign_data(params)}&vnp_SecureHash={secure_hash}"

        logger.info(f"  💳 VNPay pay URL issued for {order.order_code} (ref {txn_ref})")
        return PaymentRequest(
            pay_url=pay_url,
            txn_ref=txn_ref,
            payload={
                "payUrl": pay_url,
                "txnRef": txn_ref,
                "expireDate": params["vnp_ExpireDate"],
            },
        )

    def parse_and_verify(
        self,
        raw: dict,
        source: ConfirmationSource,
        client_ip: str | None = None,
    ) -> NormalizedPayment:
        if not settings.vnpay_hash_secret:
            # Fail closed: never accept unsigned confirmations
            raise VerificationError("VNPAY_HASH_SECRET not configured")

        params = {k: str(v) for k, v in raw.items() if v is not None}
        received = params.get("vnp_SecureHash", "")
        if not received:
            raise VerificationError("Missing vnp_SecureHash")

        expected = sign(params, settings.vnpay_hash_secret)
        if not hmac.compare_digest(expected.lower(), received.lower()):
            raise VerificationError("Invalid Checksum")

        txn_ref = params.get("vnp_TxnRef")
        if not txn_ref or "vnp_Amount" not in params:
            raise VerificationError("Missing vnp_TxnRef or vnp_Amount")

        response_code = params.get("vnp_ResponseCode", "")
        txn_status = params.get("vnp_TransactionStatus")
        succeeded = response_code == SUCCESS_CODE and txn_status in (None, SUCCESS_CODE)

        return NormalizedPayment(
            gateway=self.gateway,
            order_code=order_code_from_txn_ref(txn_ref, self.gateway),
            txn_ref=txn_ref,
            gateway_transaction_id=params.get("vnp_TransactionNo"),
            amount=to_decimal(params["vnp_Amount"]) / 100,
            result_code=response_code,
            succeeded=succeeded,
            message=None if succeeded else f"VNPay response code {response_code}",
            raw={k: v for k, v in params.items() if k not in HASH_FIELDS},
        )

    async def refund(
        self,
        order,
        success_txn,
        *,
        amount: Decimal,
        reason: str,
        refund_ref: str,
    ) -> RefundOutcome:
        logger.info(
            f"  ↩️  VNPay refund of {amount} recorded for {order.order_code}; "
            f"settle it in the merchant portal"
        )
        return RefundOutcome(
            succeeded=True,
            reference=refund_ref,
            raw={
                "originalTransactionId": success_txn.transaction_id,
                "refundAmount": str(amount),
                "message": reason,
                "refundDate": datetime.now(timezone.utc).isoformat(),
            },
            message="VNPay refund recorded. Process the refund manually in the VNPay merchant portal.",
            manual=True,
        )

    def acknowledge(self, outcome: ConfirmationOutcome) -> tuple[int, dict | None]:
        code, message = IPN_RESPONSES.get(outcome, ("99", "Unknown error"))
        return 200, {"RspCode": code, "Message": message}
