"""
Payment endpoints — pay URL, gateway callbacks/webhooks, admin refund.

Endpoints:
    POST     /payments/{gateway}/create      — Issue (or reuse) a pay URL
    GET|POST /payments/{gateway}/callback    — Browser return from the gateway
    GET|POST /payments/{gateway}/webhook     — Gateway IPN (server-to-server)
    POST     /payments/refund/{order_id}     — Admin refund

Gateway inbound endpoints answer every business outcome (bad signature,
unknown order, amount mismatch, duplicates) with the gateway's own
acknowledgement format. Unexpected failures answer 500 so the gateway retries.
"""
import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from db_models import User
from deps import require_admin, require_current_user
from domain.enums import PaymentGateway
from domain.responses import money, success_response
from models import CreatePaymentRequest, OrderResponse, RefundRequest, TransactionResponse, dump
from services import payment_orchestrator
from services.gateways import get_adapter
from utils.validators import client_ip, validated_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


async def _inbound_payload(request: Request) -> dict:
    """Merge query params with a JSON body (VNPay uses the query, MoMo JSON)."""
    payload = dict(request.query_params)
    if request.method == "POST" and "application/json" in request.headers.get("content-type", ""):
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            payload.update(body)
    return payload


# ════════════════════════════════════════════════════════════════════
# Admin Refund (registered before /{gateway}/... routes)
# ════════════════════════════════════════════════════════════════════


@router.post("/refund/{order_id}")
async def refund_order(
    order_id: int,
    req: RefundRequest | None = None,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Refund a PAID order. The order stays PAID; the enrollment is untouched."""
    req = req or RefundRequest()
    result = await payment_orchestrator.refund(
        db,
        order_id=order_id,
        actor_id=admin.id,
        actor_role=admin.role,
        amount=req.amount,
        reason=req.reason,
    )
    return success_response(
        data={
            "order": dump(OrderResponse, result["order"]),
            "refundTransaction": dump(TransactionResponse, result["refundTransaction"]),
            "refundedTotal": money(result["refundedTotal"]),
            "remaining": money(result["remaining"]),
            "manual": result["manual"],
            "message": result["message"],
        }
    )


# ════════════════════════════════════════════════════════════════════
# Checkout
# ════════════════════════════════════════════════════════════════════


@router.post("/{gateway}/create")
async def create_payment(
    req: CreatePaymentRequest,
    request: Request,
    gateway: PaymentGateway = Depends(validated_gateway),
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Issue a pay URL for the caller's PENDING order."""
    result = await payment_orchestrator.create_payment_url(
        db,
        order_id=req.order_id,
        user_id=user.id,
        gateway=gateway,
        client_ip=client_ip(request),
    )
    result["amount"] = money(result["amount"])
    return success_response(data=result)


# ════════════════════════════════════════════════════════════════════
# Gateway Inbound
# ════════════════════════════════════════════════════════════════════


@router.api_route("/{gateway}/callback", methods=["GET", "POST"])
async def payment_callback(
    request: Request,
    gateway: PaymentGateway = Depends(validated_gateway),
    db: AsyncSession = Depends(get_db),
):
    """
    Browser return URL.

    The frontend calls this with the gateway's query string to learn the
    outcome; a failed callback never fails the order on its own.
    """
    payload = await _inbound_payload(request)
    result = await payment_orchestrator.handle_callback(
        db, gateway, payload, client_ip=client_ip(request)
    )
    return success_response(data=result.to_dict())


@router.api_route("/{gateway}/webhook", methods=["GET", "POST"])
async def payment_webhook(
    request: Request,
    gateway: PaymentGateway = Depends(validated_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Gateway IPN. VNPay sends GET query params; MoMo POSTs JSON."""
    payload = await _inbound_payload(request)
    result = await payment_orchestrator.handle_webhook(
        db, gateway, payload, client_ip=client_ip(request)
    )
    status_code, body = get_adapter(gateway).acknowledge(result.outcome)
    if body is None:
        return Response(status_code=status_code)
    return JSONResponse(status_code=status_code, content=body)
