"""
Payment gateway adapter contract and registry.

Each provider (VNPay, MoMo) implements GatewayAdapter:

    build_payment_url()  → PaymentRequest (pay URL + payload to persist)
    verify_callback()    → VerificationResult (browser redirect)
    verify_webhook()     → VerificationResult (server-to-server IPN)
    refund()             → RefundOutcome
    acknowledge()        → (status_code, body) answered to the provider's IPN

Verification never raises to the caller: signature or shape problems are
logged and returned as an invalid result. The orchestrator only ever sees
NormalizedPayment, identical in shape for every provider.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Any, Optional

from domain.enums import ConfirmationSource, PaymentGateway
from domain.errors import (
    GatewayConfigError,
    GatewayMismatchError,
    UnsupportedGatewayError,
    VerificationError,
)

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════
# Value objects
# ════════════════════════════════════════════════════════════════════


@dataclass
class NormalizedPayment:
    """Provider-independent view of a verified callback/webhook."""
    gateway: PaymentGateway
    order_code: str
    txn_ref: Optional[str]                 # our transaction_id for the attempt
    gateway_transaction_id: Optional[str]  # provider's own reference
    amount: Decimal
    result_code: str
    succeeded: bool
    message: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class VerificationResult:
    valid: bool
    payment: Optional[NormalizedPayment] = None
    reason: Optional[str] = None


@dataclass
class PaymentRequest:
    pay_url: str
    txn_ref: str
    payload: dict = field(default_factory=dict)  # stored as gateway_response


@dataclass
class RefundOutcome:
    succeeded: bool
    reference: str
    raw: dict = field(default_factory=dict)
    message: Optional[str] = None
    manual: bool = False  # recorded locally; must be settled in the merchant portal


class ConfirmationOutcome(str, Enum):
    CONFIRMED = "CONFIRMED"
    ALREADY_PAID = "ALREADY_PAID"
    LATE_CONFIRMATION = "LATE_CONFIRMATION"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


# ════════════════════════════════════════════════════════════════════
# Helpers
# ════════════════════════════════════════════════════════════════════


def parse_gateway(value: Any) -> PaymentGateway:
    """Case-insensitive gateway lookup. Raises UnsupportedGatewayError."""
    if isinstance(value, PaymentGateway):
        return value
    try:
        return PaymentGateway(str(value or "").strip().upper())
    except ValueError:
        raise UnsupportedGatewayError(str(value))


def to_decimal(value: Any) -> Decimal:
    """Parse a provider amount (str/int/float) into Decimal."""
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, AttributeError):
        raise VerificationError(f"Invalid amount: {value!r}")


def order_code_from_txn_ref(txn_ref: str, gateway: PaymentGateway) -> str:
    """
    Recover the order code from `<orderCode>-<GATEWAY>-<millis>`.

    Falls back to the whole reference when it does not follow that shape.
    """
    parts = txn_ref.rsplit("-", 2)
    if len(parts) == 3 and parts[1] == gateway.value:
        return parts[0]
    return txn_ref


# ════════════════════════════════════════════════════════════════════
# Adapter contract
# ════════════════════════════════════════════════════════════════════


class GatewayAdapter(ABC):
    """Base class for payment gateway adapters."""

    gateway: PaymentGateway

    # ── Configuration ──────────────────────────────────────────────

    @abstractmethod
    def missing_settings(self) -> list[str]:
        raise NotImplementedError

    def is_configured(self) -> bool:
        return not self.missing_settings()

    def ensure_configured(self) -> None:
        missing = self.missing_settings()
        if missing:
            logger.error(f"{self.gateway.value} gateway missing settings: {', '.join(missing)}")
            raise GatewayConfigError(self.gateway.value, missing)

    # ── References & amounts ───────────────────────────────────────

    def generate_txn_ref(self, order_code: str, suffix: str | None = None) -> str:
        millis = int(time.time() * 1000)
        stamp = f"{suffix}-{millis}" if suffix else str(millis)
        return f"{order_code}-{self.gateway.value}-{stamp}"

    def amounts_match(self, expected: Decimal, reported: Decimal) -> bool:
        """Compare amounts in the provider's unit (whole VND)."""
        unit = Decimal("1")
        return (
            Decimal(expected).quantize(unit, rounding=ROUND_HALF_UP)
            == Decimal(reported).quantize(unit, rounding=ROUND_HALF_UP)
        )

    def check_order_gateway(self, order) -> None:
        if order.payment_gateway != self.gateway.value:
            raise GatewayMismatchError(order.payment_gateway, self.gateway.value)

    # ── Protocol ───────────────────────────────────────────────────

    @abstractmethod
    async def build_payment_url(
        self,
        order,
        *,
        txn_ref: str,
        client_ip: str | None = None,
        course_title: str | None = None,
    ) -> PaymentRequest:
        raise NotImplementedError

    @abstractmethod
    def parse_and_verify(
        self,
        raw: dict,
        source: ConfirmationSource,
        client_ip: str | None = None,
    ) -> NormalizedPayment:
        """Verify the provider signature and normalize. Raises VerificationError."""
        raise NotImplementedError

    def verify_callback(self, raw: dict) -> VerificationResult:
        return self._verify(raw, ConfirmationSource.CALLBACK)

    def verify_webhook(self, raw: dict, client_ip: str | None = None) -> VerificationResult:
        return self._verify(raw, ConfirmationSource.WEBHOOK, client_ip)

    def _verify(
        self,
        raw: dict,
        source: ConfirmationSource,
        client_ip: str | None = None,
    ) -> VerificationResult:
        try:
            payment = self.parse_and_verify(dict(raw or {}), source, client_ip)
        except VerificationError as exc:
            logger.warning(f"  ⚠️  {self.gateway.value} {source.value} rejected: {exc.message}")
            return VerificationResult(valid=False, reason=exc.message)
        return VerificationResult(valid=True, payment=payment)

    @abstractmethod
    async def refund(
        self,
        order,
        success_txn,
        *,
        amount: Decimal,
        reason: str,
        refund_ref: str,
    ) -> RefundOutcome:
        raise NotImplementedError

    @abstractmethod
    def acknowledge(self, outcome: ConfirmationOutcome) -> tuple[int, dict | None]:
        raise NotImplementedError


# ════════════════════════════════════════════════════════════════════
# Registry
# ════════════════════════════════════════════════════════════════════

_registry: dict[PaymentGateway, GatewayAdapter] = {}


def _build_registry() -> dict[PaymentGateway, GatewayAdapter]:
    from services.momo_gateway import MoMoAdapter
    from services.vnpay_gateway import VNPayAdapter

    return {
        PaymentGateway.VNPAY: VNPayAdapter(),
        PaymentGateway.MOMO: MoMoAdapter(),
    }


def get_adapter(gateway: Any) -> GatewayAdapter:
    """Return the adapter for a gateway name (case-insensitive)."""
    global _registry
    if not _registry:
        _registry = _build_registry()
    return _registry[parse_gateway(gateway)]


def supported_gateways() -> list[str]:
    return [g.value for g in PaymentGateway]
