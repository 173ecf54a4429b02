"""
Tests for API route endpoints.

Drives the FastAPI app through httpx ASGITransport against the in-memory
database: order creation, gateway IPNs, cancellation, refunds, enrollment.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import func, select

from db_models import Enrollment, Lesson, Order


async def _create_order(client, headers, course_id: int, gateway: str = "VNPAY") -> dict:
    response = await client.post(
        "/orders", json={"courseId": course_id, "paymentGateway": gateway}, headers=headers
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestHealthEndpoint:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_health_returns_200(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert set(data["gateways_configured"]) == {"VNPAY", "MOMO"}

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_worker_status(self, client):
        response = await client.get("/workers/expiration/status")
        assert response.status_code == 200
        assert response.json()["enabled"] is False


class TestAuthGuards:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_missing_token_is_401(self, client, paid_course):
        response = await client.post("/orders", json={"courseId": paid_course.id, "paymentGateway": "VNPAY"})
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "unauthorized"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_garbage_token_is_401(self, client):
        response = await client.get("/orders", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_other_users_order_is_403(self, client, student, other_student, paid_course, auth_headers):
        order = await _create_order(client, auth_headers(student), paid_course.id)
        response = await client.get(f"/orders/{order['id']}", headers=auth_headers(other_student))
        assert response.status_code == 403


class TestOrderEndpoints:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_create_order_snapshot(self, client, student, paid_course, auth_headers):
        order = await _create_order(client, auth_headers(student), paid_course.id)

        assert order["paymentStatus"] == "PENDING"
        assert order["paymentGateway"] == "VNPAY"
        assert Decimal(order["originalPrice"]) == Decimal("100000")
        assert Decimal(order["discountAmount"]) == Decimal("20000")
        assert Decimal(order["finalPrice"]) == Decimal("80000")

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_create_order_free_course_is_400(self, client, student, free_course, auth_headers):
        response = await client.post(
            "/orders",
            json={"courseId": free_course.id, "paymentGateway": "VNPAY"},
            headers=auth_headers(student),
        )
        assert response.status_code == 400

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_cancel_pending_order(self, client, student, paid_course, auth_headers):
        headers = auth_headers(student)
        order = await _create_order(client, headers, paid_course.id)

        response = await client.patch(f"/orders/{order['id']}/cancel", headers=headers)
        assert response.status_code == 200
        assert response.json()["data"]["paymentStatus"] == "FAILED"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_list_and_lookup(self, client, student, paid_course, auth_headers):
        headers = auth_headers(student)
        order = await _create_order(client, headers, paid_course.id)

        listing = await client.get("/orders", params={"paymentStatus": "PENDING"}, headers=headers)
        assert listing.status_code == 200
        body = listing.json()
        assert body["meta"]["total"] == 1
        assert body["data"][0]["orderCode"] == order["orderCode"]

        by_code = await client.get(f"/orders/code/{order['orderCode']}", headers=headers)
        assert by_code.status_code == 200
        assert by_code.json()["data"]["id"] == order["id"]

        stats = await client.get("/orders/stats", headers=headers)
        assert stats.json()["data"] == {
            "total": 1, "paid": 0, "pending": 1, "failed": 0, "totalSpent": "0.00",
        }


class TestCheckoutFlow:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_vnpay_checkout_end_to_end(self, client, db_session, student, paid_course, auth_headers, vnpay_ipn):
        headers = auth_headers(student)
        course_id = paid_course.id
        order = await _create_order(client, headers, course_id)

        pay = await client.post("/payments/vnpay/create", json={"orderId": order["id"]}, headers=headers)
        assert pay.status_code == 200
        pay_data = pay.json()["data"]
        assert pay_data["payUrl"].startswith("https://sandbox.vnpayment.vn/")
        assert pay_data["amount"] == "80000.00"

        params = vnpay_ipn(order["orderCode"], 80000, txn_ref=pay_data["transactionId"])
        ipn = await client.get("/payments/vnpay/webhook", params=params)
        assert ipn.status_code == 200
        assert ipn.json() == {"RspCode": "00", "Message": "Confirm Success"}

        replay = await client.get("/payments/vnpay/webhook", params=params)
        assert replay.json()["RspCode"] == "02"

        detail = await client.get(f"/orders/{order['id']}", headers=headers)
        data = detail.json()["data"]
        assert data["paymentStatus"] == "PAID"
        assert [t["status"] for t in data["transactions"]] == ["SUCCESS"]

        cancel = await client.patch(f"/orders/{order['id']}/cancel", headers=headers)
        assert cancel.status_code == 400
        assert cancel.json()["error"]["code"] == "invalidorderstate"

        check = await client.get(f"/enrollments/check/{course_id}", headers=headers)
        assert check.json()["data"]["isEnrolled"] is True
        total = (await db_session.execute(select(func.count(Enrollment.id)))).scalar_one()
        assert total == 1

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_vnpay_amount_mismatch_acknowledged(self, client, db_session, student, paid_course, auth_headers, vnpay_ipn):
        headers = auth_headers(student)
        order = await _create_order(client, headers, paid_course.id)

        ipn = await client.get("/payments/vnpay/webhook", params=vnpay_ipn(order["orderCode"], 79999))
        assert ipn.json()["RspCode"] == "04"

        detail = await client.get(f"/orders/{order['id']}", headers=headers)
        assert detail.json()["data"]["paymentStatus"] == "PENDING"
        total = (await db_session.execute(select(func.count(Enrollment.id)))).scalar_one()
        assert total == 0

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_vnpay_bad_checksum(self, client, student, paid_course, auth_headers, vnpay_ipn):
        order = await _create_order(client, auth_headers(student), paid_course.id)
        params = vnpay_ipn(order["orderCode"], 80000)
        params["vnp_ResponseCode"] = "07"

        ipn = await client.get("/payments/vnpay/webhook", params=params)
        assert ipn.json()["RspCode"] == "97"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_vnpay_unknown_order(self, client, vnpay_ipn):
        ipn = await client.get(
            "/payments/vnpay/webhook", params=vnpay_ipn("ORD-20260101-000000-0000", 80000)
        )
        assert ipn.json()["RspCode"] == "01"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_vnpay_callback_reports_outcome(self, client, student, paid_course, auth_headers, vnpay_ipn):
        headers = auth_headers(student)
        order = await _create_order(client, headers, paid_course.id)

        response = await client.get(
            "/payments/vnpay/callback", params=vnpay_ipn(order["orderCode"], 80000, response_code="24")
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["outcome"] == "PAYMENT_FAILED"
        assert data["success"] is False
        assert data["paymentStatus"] == "PENDING"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_momo_ipn_answers_204(self, client, db_session, student, paid_course, auth_headers, momo_ipn):
        headers = auth_headers(student)
        order = await _create_order(client, headers, paid_course.id, gateway="MOMO")

        ipn = await client.post("/payments/momo/webhook", json=momo_ipn(order["orderCode"], 80000))
        assert ipn.status_code == 204
        assert ipn.content == b""

        stored = (await db_session.execute(
            select(Order).where(Order.id == order["id"]).execution_options(populate_existing=True)
        )).scalar_one()
        assert stored.payment_status == "PAID"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_momo_create_uses_gateway_response(self, client, student, paid_course, auth_headers, gateway_settings):
        headers = auth_headers(student)
        order = await _create_order(client, headers, paid_course.id, gateway="MOMO")

        resp = MagicMock()
        resp.status_code = 200
        resp.json.return_value = {"resultCode": 0, "payUrl": "https://test-payment.momo.vn/pay/abc"}
        with patch("httpx.AsyncClient.post", new=AsyncMock(return_value=resp)):
            pay = await client.post("/payments/momo/create", json={"orderId": order["id"]}, headers=headers)

        assert pay.status_code == 200
        assert pay.json()["data"]["payUrl"] == "https://test-payment.momo.vn/pay/abc"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_unsupported_gateway_path(self, client, student, auth_headers):
        response = await client.post("/payments/paypal/create", json={"orderId": 1}, headers=auth_headers(student))
        assert response.status_code == 400


class TestRefundEndpoint:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_admin_refund(self, client, student, admin, paid_course, auth_headers, vnpay_ipn):
        order = await _create_order(client, auth_headers(student), paid_course.id)
        await client.get("/payments/vnpay/webhook", params=vnpay_ipn(order["orderCode"], 80000))

        denied = await client.post(f"/payments/refund/{order['id']}", headers=auth_headers(student))
        assert denied.status_code == 403

        response = await client.post(
            f"/payments/refund/{order['id']}",
            json={"reason": "Requested by learner"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["order"]["paymentStatus"] == "PAID"
        assert data["refundTransaction"]["status"] == "REFUNDED"
        assert data["refundedTotal"] == "80000.00"
        assert data["remaining"] == "0.00"
        assert data["manual"] is True

        again = await client.post(f"/payments/refund/{order['id']}", headers=auth_headers(admin))
        assert again.status_code == 400


class TestEnrollmentEndpoints:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_free_enrollment_and_progress(self, client, db_session, student, free_course, auth_headers):
        headers = auth_headers(student)
        course_id = free_course.id
        lesson_id = (await db_session.execute(
            select(Lesson.id).where(Lesson.course_id == course_id)
        )).scalar_one()

        response = await client.post("/enrollments", json={"courseId": course_id}, headers=headers)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["requiresPayment"] is False
        assert data["enrollment"]["status"] == "ACTIVE"

        listing = await client.get("/enrollments", headers=headers)
        assert listing.json()["meta"]["total"] == 1

        position = await client.put(
            f"/progress/lessons/{lesson_id}/position", json={"positionSeconds": 120}, headers=headers
        )
        assert position.json()["data"]["watchPositionSeconds"] == 120

        done = await client.post(f"/progress/lessons/{lesson_id}/complete", headers=headers)
        assert done.status_code == 200
        assert done.json()["data"]["progressPercentage"] == "100.00"
        assert done.json()["data"]["enrollmentStatus"] == "COMPLETED"

        again = await client.post("/enrollments", json={"courseId": course_id}, headers=headers)
        assert again.status_code == 409

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_paid_enrollment_requires_payment(self, client, student, paid_course, auth_headers):
        response = await client.post(
            "/enrollments",
            json={"courseId": paid_course.id, "paymentGateway": "VNPAY"},
            headers=auth_headers(student),
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["requiresPayment"] is True
        assert data["order"]["paymentStatus"] == "PENDING"
        assert data["enrollment"] is None

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_notifications_after_enrollment(self, client, student, free_course, auth_headers):
        headers = auth_headers(student)
        await client.post("/enrollments", json={"courseId": free_course.id}, headers=headers)

        listing = await client.get("/notifications", params={"unreadOnly": "true"}, headers=headers)
        items = listing.json()["data"]
        assert [n["type"] for n in items] == ["ENROLLMENT_SUCCESS"]

        read = await client.patch(f"/notifications/{items[0]['id']}/read", headers=headers)
        assert read.json()["data"]["isRead"] is True

        unread = await client.get("/notifications", params={"unreadOnly": "true"}, headers=headers)
        assert unread.json()["meta"]["total"] == 0


class TestCouponEndpoints:

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_preview_coupon(self, client, student, paid_course, auth_headers, make_coupon):
        await make_coupon("SAVE20")

        response = await client.post(
            "/coupons/validate",
            json={"courseId": paid_course.id, "couponCode": "save20"},
            headers=auth_headers(student),
        )

        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["couponCode"] == "SAVE20"
        assert data["discount"] == "16000.00"
        assert data["finalPrice"] == "64000.00"

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_preview_unknown_coupon_is_400(self, client, student, paid_course, auth_headers):
        response = await client.post(
            "/coupons/validate",
            json={"courseId": paid_course.id, "couponCode": "NOPE"},
            headers=auth_headers(student),
        )
        assert response.status_code == 400

    @pytest.mark.api
    @pytest.mark.asyncio
    async def test_order_with_coupon(self, client, student, paid_course, auth_headers, make_coupon):
        await make_coupon("SAVE20")

        response = await client.post(
            "/orders",
            json={"courseId": paid_course.id, "paymentGateway": "VNPAY", "couponCode": "SAVE20"},
            headers=auth_headers(student),
        )

        assert response.status_code == 201, response.text
        order = response.json()["data"]
        assert order["appliedCouponCode"] == "SAVE20"
        assert Decimal(order["couponDiscount"]) == Decimal("16000")
        assert Decimal(order["discountAmount"]) == Decimal("36000")
        assert Decimal(order["finalPrice"]) == Decimal("64000")
        assert Decimal(order["refundedAmount"]) == Decimal("0")
