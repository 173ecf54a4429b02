"""
Configuration management for the Course Checkout backend.

Loads settings from .env via pydantic-settings.

Security notes:
    - validate_production_settings() enforces strict CORS in production
    - Gateway secrets are required whenever a gateway is configured
"""
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── Database ────────────────────────────────────────────────────
    database_url: str = "sqlite:///./data/course_checkout.db"

    # ── Application ─────────────────────────────────────────────────
    environment: str = "development"

    # ── Auth (JWT) ──────────────────────────────────────────────────
    jwt_secret: str = ""
    jwt_issuer: str = "course-checkout-api"
    jwt_access_ttl_minutes: int = 60

    # ── VNPay ───────────────────────────────────────────────────────
    vnpay_tmn_code: str = ""
    vnpay_hash_secret: str = ""
    vnpay_url: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    vnpay_return_url: str = "http://localhost:5173/payment/vnpay/return"
    vnpay_version: str = "2.1.0"
    vnpay_locale: str = "vn"

    # ── MoMo ────────────────────────────────────────────────────────
    momo_partner_code: str = ""
    momo_access_key: str = ""
    momo_secret_key: str = ""
    momo_endpoint: str = "https://test-payment.momo.vn/v2/gateway/api/create"
    momo_refund_endpoint: str = "https://test-payment.momo.vn/v2/gateway/api/refund"
    momo_return_url: str = "http://localhost:5173/payment/momo/return"
    momo_notify_url: str = "http://localhost:8000/payments/momo/webhook"
    momo_request_type: str = "captureWallet"
    momo_partner_name: str = "Course Checkout"
    momo_ip_whitelist: str = ""  # comma-separated; empty disables the check

    # ── Payment timing ──────────────────────────────────────────────
    gateway_http_timeout_seconds: float = 10.0
    pending_order_timeout_minutes: int = 15      # reuse window for PENDING orders
    pending_payment_expiration_minutes: int = 15  # pay URL lifetime
    pending_sweep_grace_minutes: int = 5
    expiration_sweep_interval_seconds: int = 60
    expiration_worker_enabled: bool = True

    # ── CORS ────────────────────────────────────────────────────────
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # allow unknown .env keys without crashing
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def momo_ip_whitelist_list(self) -> List[str]:
        return [ip.strip() for ip in self.momo_ip_whitelist.split(",") if ip.strip()]

    def validate_production_settings(self):
        """
        Validate settings for production safety.

        Called during app startup.
        """
        if self.environment == "production":
            if "*" in self.cors_origins:
                raise ValueError(
                    "CORS_ORIGINS must not contain '*' in production. "
                    "Set explicit allowed origins."
                )
            if not self.jwt_secret:
                raise ValueError(
                    "JWT_SECRET must be set in production. "
                    "It is used to sign access tokens."
                )
            if self.vnpay_tmn_code and not self.vnpay_hash_secret:
                raise ValueError("VNPAY_HASH_SECRET must be set when VNPAY_TMN_CODE is configured.")
            if self.momo_partner_code and not self.momo_secret_key:
                raise ValueError("MOMO_SECRET_KEY must be set when MOMO_PARTNER_CODE is configured.")
            logger.info("✅ Production settings validated")
        else:
            warnings = []
            if "*" in self.cors_origins:
                warnings.append("CORS_ORIGINS contains '*' (open access)")
            if not self.vnpay_hash_secret:
                warnings.append("VNPAY_HASH_SECRET not set (VNPay checkout disabled)")
            if not self.momo_secret_key:
                warnings.append("MOMO_SECRET_KEY not set (MoMo checkout disabled)")
            for w in warnings:
                logger.warning(f"⚠️  {w}")


# Global settings instance
settings = Settings()
