"""
Pytest configuration and shared fixtures for the Course Checkout tests.

Provides an in-memory SQLite DB per test, an ASGI test client bound to it,
gateway credentials, and user/course/lesson sample data.
"""
import pytest
import pytest_asyncio
from decimal import Decimal
from typing import AsyncGenerator

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from config import settings
from database import Base, get_db

# ── Test Configuration ───────────────────────────────────────────────
# Set test-only values for settings that would normally come from .env
settings.jwt_secret = "test-jwt-secret-for-pytest-only"
settings.expiration_worker_enabled = False

VNPAY_SECRET = "TESTVNPAYHASHSECRET0123456789ABC"
MOMO_SECRET = "test-momo-secret-key"


# ── Database Fixtures ────────────────────────────────────────────────


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create an in-memory SQLite database session for each test.

    Uses StaticPool to allow in-memory SQLite with async SQLAlchemy.
    """
    import db_models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def file_sessions(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """
    Session factory over a file-backed SQLite database.

    Every session gets its own connection, so two sessions race on the same
    rows the way two API workers would. Writers queue on the file lock.
    """
    import db_models  # noqa: F401

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}",
        connect_args={"timeout": 15},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client against the FastAPI app with the in-memory database.

    Overrides get_db dependency to use the test DB session.
    """
    from main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


# ── Gateway Fixtures ─────────────────────────────────────────────────


@pytest.fixture
def gateway_settings(monkeypatch):
    """Configure both gateways with test credentials."""
    monkeypatch.setattr(settings, "vnpay_tmn_code", "TESTTMN1")
    monkeypatch.setattr(settings, "vnpay_hash_secret", VNPAY_SECRET)
    monkeypatch.setattr(settings, "vnpay_url", "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html")
    monkeypatch.setattr(settings, "vnpay_return_url", "http://localhost:5173/payment/vnpay/return")
    monkeypatch.setattr(settings, "momo_partner_code", "MOMOTEST")
    monkeypatch.setattr(settings, "momo_access_key", "test-access-key")
    monkeypatch.setattr(settings, "momo_secret_key", MOMO_SECRET)
    monkeypatch.setattr(settings, "momo_ip_whitelist", "")
    return settings


@pytest.fixture
def vnpay_ipn(gateway_settings):
    """Factory for signed VNPay return/IPN query params."""
    from services.vnpay_gateway import sign

    def _build(order_code: str, amount, *, response_code: str = "00", txn_ref: str | None = None,
               transaction_no: str = "14123456") -> dict:
        params = {
            "vnp_TmnCode": "TESTTMN1",
            "vnp_Amount": str(int(Decimal(str(amount)) * 100)),
            "vnp_BankCode": "NCB",
            "vnp_OrderInfo": f"Thanh toan don hang {order_code}",
            "vnp_PayDate": "20260101101500",
            "vnp_ResponseCode": response_code,
            "vnp_TransactionNo": transaction_no,
            "vnp_TransactionStatus": response_code,
            "vnp_TxnRef": txn_ref or f"{order_code}-VNPAY-1767225600000",
        }
        params["vnp_SecureHash"] = sign(params, VNPAY_SECRET)
        return params

    return _build


@pytest.fixture
def momo_ipn(gateway_settings):
    """Factory for signed MoMo redirect/IPN payloads."""
    from services.momo_gateway import RESULT_SIGNATURE_KEYS, sign

    def _build(order_code: str, amount, *, result_code: int = 0, request_id: str | None = None,
               trans_id: int = 4088878653) -> dict:
        data = {
            "partnerCode": "MOMOTEST",
            "orderId": order_code,
            "requestId": request_id or f"{order_code}-MOMO-1767225600000",
            "amount": int(Decimal(str(amount))),
            "orderInfo": "Thanh toan khoa hoc",
            "orderType": "momo_wallet",
            "transId": trans_id,
            "resultCode": result_code,
            "message": "Successful." if result_code == 0 else "Transaction denied by user.",
            "payType": "qr",
            "responseTime": 1767225660000,
            "extraData": "",
        }
        to_sign = {k: str(v) for k, v in data.items()}
        to_sign["accessKey"] = "test-access-key"
        data["signature"] = sign(to_sign, RESULT_SIGNATURE_KEYS, MOMO_SECRET)
        return data

    return _build


# ── Test Data Fixtures ────────────────────────────────────────────────


@pytest_asyncio.fixture
async def student(db_session: AsyncSession):
    from db_models import User

    user = User(email="student@example.com", full_name="Test Student", role="student")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def other_student(db_session: AsyncSession):
    from db_models import User

    user = User(email="other@example.com", full_name="Other Student", role="student")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def admin(db_session: AsyncSession):
    from db_models import User

    user = User(email="admin@example.com", full_name="Admin", role="admin")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def paid_course(db_session: AsyncSession):
    """Published course: price 100000, discounted to 80000, with three lessons."""
    from db_models import Course, Lesson

    course = Course(
        title="Python for Data Analysis",
        slug="python-data-analysis",
        price=Decimal("100000"),
        discount_price=Decimal("80000"),
        status="PUBLISHED",
    )
    db_session.add(course)
    await db_session.flush()
    for position in range(1, 4):
        db_session.add(Lesson(course_id=course.id, title=f"Lesson {position}", position=position))
    db_session.add(Lesson(course_id=course.id, title="Draft lesson", position=9, is_published=False))
    await db_session.commit()
    await db_session.refresh(course)
    return course


@pytest_asyncio.fixture
async def free_course(db_session: AsyncSession):
    from db_models import Course, Lesson

    course = Course(
        title="Intro to Git",
        slug="intro-to-git",
        price=Decimal("0"),
        status="PUBLISHED",
    )
    db_session.add(course)
    await db_session.flush()
    db_session.add(Lesson(course_id=course.id, title="Only lesson", position=1))
    await db_session.commit()
    await db_session.refresh(course)
    return course


@pytest_asyncio.fixture
async def draft_course(db_session: AsyncSession):
    from db_models import Course

    course = Course(title="Unreleased", slug="unreleased", price=Decimal("50000"), status="DRAFT")
    db_session.add(course)
    await db_session.commit()
    await db_session.refresh(course)
    return course


@pytest.fixture
def auth_headers():
    """Build a bearer Authorization header for a user row."""
    from middleware.auth import issue_access_token

    def _headers(user) -> dict:
        return {"Authorization": f"Bearer {issue_access_token(user_id=user.id, role=user.role)}"}

    return _headers


@pytest_asyncio.fixture
async def instructor(db_session: AsyncSession):
    from db_models import User

    user = User(email="teacher@example.com", full_name="Course Author", role="instructor")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def authored_course(db_session: AsyncSession, instructor):
    """Published course owned by an instructor: 200000, no course discount."""
    from db_models import Course, Lesson

    course = Course(
        title="FastAPI in Production",
        slug="fastapi-in-production",
        price=Decimal("200000"),
        status="PUBLISHED",
        instructor_id=instructor.id,
    )
    db_session.add(course)
    await db_session.flush()
    db_session.add(Lesson(course_id=course.id, title="Setup", position=1))
    await db_session.commit()
    await db_session.refresh(course)
    return course


@pytest.fixture
def make_coupon(db_session: AsyncSession):
    """Factory for coupon rows valid from yesterday to next month."""
    from datetime import timedelta

    from db_models import Coupon, utcnow

    async def _make(code: str = "SAVE20", **fields):
        now = utcnow()
        values = {
            "code": code,
            "type": "PERCENT",
            "value": Decimal("20"),
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=30),
        }
        values.update(fields)
        coupon = Coupon(**values)
        db_session.add(coupon)
        await db_session.commit()
        await db_session.refresh(coupon)
        return coupon

    return _make
