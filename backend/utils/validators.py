"""
Input validation utilities for the Course Checkout backend.

Provides reusable validators for gateway names and client addresses.
"""
from fastapi import Path, Request

from domain.enums import PaymentGateway
from services.gateways import parse_gateway


def validate_gateway(gateway: str) -> PaymentGateway:
    """
    Validate a payment gateway name (case-insensitive).

    Returns:
        The matching PaymentGateway

    Raises:
        UnsupportedGatewayError (400) if the gateway is unknown
    """
    return parse_gateway(gateway)


def validated_gateway(gateway: str = Path(..., description="Payment gateway: vnpay | momo")) -> PaymentGateway:
    """FastAPI dependency for validating gateway path parameters."""
    return validate_gateway(gateway)


def client_ip(request: Request) -> str | None:
    """
    Best-effort client address.

    Prefers the first hop of X-Forwarded-For (set by the reverse proxy).
    """
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else None
