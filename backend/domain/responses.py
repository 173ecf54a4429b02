"""
Standard API response helpers for consistent response formatting.

All endpoints should use these helpers to ensure consistent response envelopes:
- Success: { "success": true, "data": <payload>, "meta": {...} }
- Error: { "success": false, "error": { "code": "...", "message": "...", "details": {...} } }

Money values are serialized as strings so Decimal precision survives JSON.
"""
from decimal import Decimal
from typing import Any


def money(value: Decimal | None) -> str | None:
    """Render a Decimal amount for JSON without float rounding."""
    if value is None:
        return None
    return format(Decimal(value).quantize(Decimal("0.01")), "f")


def success_response(data: Any, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Create a standardized success response.

    Args:
        data: The response payload
        meta: Optional metadata (pagination, timestamps, etc.)

    Returns:
        dict: { "success": true, "data": <data>, "meta": <meta> }
    """
    response = {"success": True, "data": data}
    if meta:
        response["meta"] = meta
    return response


def paginated_response(
    items: list[Any],
    *,
    page: int,
    limit: int,
    total: int,
) -> dict[str, Any]:
    """
    Create a standardized page-based paginated response.

    Returns:
        dict: { "success": true, "data": <items>, "meta": { "page", "limit", "total", "totalPages", "hasMore" } }
    """
    total_pages = (total + limit - 1) // limit if limit else 0
    meta = {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasMore": page < total_pages,
    }
    return success_response(data=items, meta=meta)
