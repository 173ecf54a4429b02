"""
MoMo gateway adapter.

Protocol (MoMo AIO v2):
    - Create: POST JSON to MOMO_ENDPOINT, response carries payUrl/deeplink/qrCodeUrl.
    - Signature: HMAC-SHA256 (secret key) over "k1=v1&k2=v2..." with a fixed
      key order per message type (create, redirect/IPN, refund).
    - partnerCode in inbound payloads must equal the configured partner.
    - Success: resultCode == 0.
    - IPN is answered with HTTP 204 and no body.
"""
import base64
import hashlib
import hmac
import json
import logging
from decimal import Decimal

import httpx

from config import settings
from domain.enums import ConfirmationSource, PaymentGateway
from domain.errors import GatewayError, ValidationError, VerificationError
from services.gateways import (
    ConfirmationOutcome,
    GatewayAdapter,
    NormalizedPayment,
    PaymentRequest,
    RefundOutcome,
    to_decimal,
)

logger = logging.getLogger(__name__)

CREATE_SIGNATURE_KEYS = (
    "accessKey", "amount", "extraData", "ipnUrl", "orderId", "orderInfo",
    "partnerCode", "redirectUrl", "requestId", "requestType",
)
RESULT_SIGNATURE_KEYS = (
    "accessKey", "amount", "extraData", "message", "orderId", "orderInfo",
    "orderType", "partnerCode", "payType", "requestId", "responseTime",
    "resultCode", "transId",
)
REFUND_SIGNATURE_KEYS = (
    "accessKey", "amount", "description", "orderId", "partnerCode",
    "requestId", "transId",
)


def build_raw_signature(data: dict, keys: tuple[str, ...]) -> str:
    parts = []
    for key in keys:
        value = data.get(key)
        parts.append(f"{key}={'' if value is None else value}")
    return "&".join(parts)


def sign(data: dict, keys: tuple[str, ...], secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        build_raw_signature(data, keys).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def encode_extra_data(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def whole_vnd(amount: Decimal) -> str:
    return str(int(Decimal(amount).to_integral_value()))


class MoMoAdapter(GatewayAdapter):
    gateway = PaymentGateway.MOMO

    def missing_settings(self) -> list[str]:
        required = {
            "MOMO_PARTNER_CODE": settings.momo_partner_code,
            "MOMO_ACCESS_KEY": settings.momo_access_key,
            "MOMO_SECRET_KEY": settings.momo_secret_key,
            "MOMO_ENDPOINT": settings.momo_endpoint,
            "MOMO_RETURN_URL": settings.momo_return_url,
            "MOMO_NOTIFY_URL": settings.momo_notify_url,
        }
        return [name for name, value in required.items() if not value]

    async def _post(self, url: str, payload: dict) -> dict:
        """POST JSON to MoMo. Transport failures surface as GatewayError."""
        try:
            async with httpx.AsyncClient(timeout=settings.gateway_http_timeout_seconds) as client:
                resp = await client.post(url, json=payload)
        except httpx.TimeoutException:
            logger.error(f"  ❌ MoMo request timed out: {url}")
            raise GatewayError("MoMo did not respond in time", details={"retryable": True})
        except httpx.HTTPError as e:
            logger.error(f"  ❌ MoMo request failed: {e}")
            raise GatewayError("MoMo is unreachable", details={"retryable": True})

        try:
            body = resp.json()
        except ValueError:
            logger.error(f"  ❌ MoMo returned non-JSON response (HTTP {resp.status_code})")
            raise GatewayError("MoMo returned an invalid response", details={"httpStatus": resp.status_code})
        if not isinstance(body, dict):
            raise GatewayError("MoMo returned an invalid response", details={"httpStatus": resp.status_code})
        body.setdefault("httpStatus", resp.status_code)
        return body

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

        payload = {
            "partnerCode": settings.momo_partner_code,
            "partnerName": settings.momo_partner_name,
            "storeId": settings.momo_partner_code,
            "accessKey": settings.momo_access_key,
            "requestId": txn_ref,
            "amount": whole_vnd(order.final_price),
            "orderId": order.order_code,
            "orderInfo": f"Thanh toan khoa hoc {course_title or order.order_code}",
            "redirectUrl": settings.momo_return_url,
            "ipnUrl": settings.momo_notify_url,
            "lang": "vi",
            "extraData": encode_extra_data({
                "orderId": order.id,
                "orderCode": order.order_code,
                "userId": order.user_id,
            }),
            "requestType": settings.momo_request_type,
            "autoCapture": True,
        }
        payload["signature"] = sign(payload, CREATE_SIGNATURE_KEYS, settings.momo_secret_key)

        body = await self._post(settings.momo_endpoint, payload)
        if body.get("resultCode") != 0 or not body.get("payUrl"):
            logger.warning(
                f"  ⚠️  MoMo create rejected for {order.order_code}: "
                f"resultCode={body.get('resultCode')} message={body.get('message')}"
            )
            raise GatewayError(
                body.get("message") or "MoMo rejected the payment request",
                details={"resultCode": body.get("resultCode")},
            )

        logger.info(f"  💳 MoMo pay URL issued for {order.order_code} (ref {txn_ref})")
        return PaymentRequest(
            pay_url=body["payUrl"],
            txn_ref=txn_ref,
            payload={
                "payUrl": body.get("payUrl"),
                "deeplink": body.get("deeplink"),
                "qrCodeUrl": body.get("qrCodeUrl"),
                "requestId": txn_ref,
                "resultCode": body.get("resultCode"),
            },
        )

    def parse_and_verify(
        self,
        raw: dict,
        source: ConfirmationSource,
        client_ip: str | None = None,
    ) -> NormalizedPayment:
        if not settings.momo_secret_key:
            # Fail closed: never accept unsigned confirmations
            raise VerificationError("MOMO_SECRET_KEY not configured")

        whitelist = settings.momo_ip_whitelist_list
        if source == ConfirmationSource.WEBHOOK and whitelist and client_ip not in whitelist:
            raise VerificationError(f"IPN from non-whitelisted address {client_ip}")

        signature = str(raw.get("signature") or raw.get("Signature") or "")
        if not signature:
            raise VerificationError("Missing signature")

        data = {k: ("" if v is None else str(v)) for k, v in raw.items()}
        data.setdefault("accessKey", settings.momo_access_key)
        if not data["accessKey"]:
            data["accessKey"] = settings.momo_access_key

        expected = sign(data, RESULT_SIGNATURE_KEYS, settings.momo_secret_key)
        if not hmac.compare_digest(expected, signature):
            raise VerificationError("Invalid MoMo signature")

        if data.get("partnerCode") != settings.momo_partner_code:
            raise VerificationError("Partner code does not match configured MoMo partner")

        order_code = data.get("orderId")
        if not order_code or not data.get("amount"):
            raise VerificationError("Missing orderId or amount")

        try:
            result_code = int(data.get("resultCode", ""))
        except ValueError:
            raise VerificationError(f"Invalid resultCode: {data.get('resultCode')!r}")

        succeeded = result_code == 0
        return NormalizedPayment(
            gateway=self.gateway,
            order_code=order_code,
            txn_ref=data.get("requestId") or None,
            gateway_transaction_id=data.get("transId") or None,
            amount=to_decimal(data["amount"]),
            result_code=str(result_code),
            succeeded=succeeded,
            message=None if succeeded else (data.get("message") or f"MoMo result code {result_code}"),
            raw={k: v for k, v in data.items() if k not in ("signature", "Signature")},
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
        self.ensure_configured()

        response = success_txn.gateway_response or {}
        trans_id = response.get("gatewayTransactionId") or response.get("transId")
        if not trans_id:
            raise ValidationError(
                "Missing MoMo gateway transaction ID for this order. Cannot process refund."
            )

        payload = {
            "partnerCode": settings.momo_partner_code,
            "accessKey": settings.momo_access_key,
            "requestId": refund_ref,
            "orderId": refund_ref,
            "amount": whole_vnd(amount),
            "transId": str(trans_id),
            "lang": "vi",
            "description": reason,
        }
        payload["signature"] = sign(payload, REFUND_SIGNATURE_KEYS, settings.momo_secret_key)

        body = await self._post(settings.momo_refund_endpoint, payload)
        succeeded = body.get("resultCode") == 0
        if not succeeded:
            logger.warning(
                f"  ⚠️  MoMo refund rejected for {order.order_code}: "
                f"resultCode={body.get('resultCode')} message={body.get('message')}"
            )
        return RefundOutcome(
            succeeded=succeeded,
            reference=refund_ref,
            raw=body,
            message=body.get("message"),
        )

    def acknowledge(self, outcome: ConfirmationOutcome) -> tuple[int, dict | None]:
        return 204, None
