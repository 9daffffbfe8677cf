"""
Storefront Configuration Module

Loads environment variables for the payment reconciliation and fulfillment backend.
Provider credentials are optional: an adapter without credentials reports itself
as unconfigured and checkout degrades to a "contact support" response.
"""
from pydantic_settings import BaseSettings
from typing import Literal, Optional


DARAJA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

PESAPAL_BASE_URLS = {
    "sandbox": "https://cybqa.pesapal.com/pesapalv3",
    "production": "https://pay.pesapal.com/v3",
}


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Policy values (price tolerance, phone normalization, reference length)
    vary by region and provider, so they are configuration rather than
    constants.
    """

    # Application
    app_name: str = "Storefront Payments"
    app_url: str = "http://localhost:5173"  # Client app, target of browser redirects
    public_base_url: str = "http://localhost:8000"  # Used to build provider callback URLs
    support_email: str = "support@example.com"
    demo_mode: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    scheduler_enabled: bool = True

    # Database
    database_path: str = "./storefront.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Checkout policy
    currency: str = "KES"
    price_tolerance: float = 0.01
    phone_country_code: str = "254"
    chat_phone_pattern: str = r"^(\+?254|0)?[17]\d{8}$"
    merchant_reference_prefix: str = "ORD"
    merchant_reference_max_length: int = 20

    # Fulfillment
    download_url_ttl_seconds: int = 300
    chat_download_url_ttl_seconds: int = 86400

    # Provider calls and follow-up reconciliation
    provider_timeout_seconds: float = 30.0
    status_poll_max_attempts: int = 5
    reconcile_sweep_interval_minutes: int = 10
    reconcile_sweep_min_age_minutes: int = 5
    reconcile_sweep_max_age_hours: int = 24

    # Safaricom Daraja (direct STK push)
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_shortcode: str = ""
    mpesa_passkey: str = ""
    mpesa_account_reference: str = ""
    mpesa_environment: Literal["sandbox", "production"] = "sandbox"
    mpesa_timezone: str = "Africa/Nairobi"

    # PesaPal v3 (hosted redirect)
    pesapal_consumer_key: str = ""
    pesapal_consumer_secret: str = ""
    pesapal_environment: Literal["sandbox", "production"] = "sandbox"
    pesapal_ipn_id: str = ""  # Registered on first use when empty

    # PayHero (STK push through an aggregator account)
    payhero_base_url: str = "https://backend.payhero.co.ke"
    payhero_api_username: str = ""
    payhero_api_password: str = ""
    payhero_channel_id: str = ""

    # Telegram bot
    telegram_bot_token: str = ""

    # Identity provider (HS256 access tokens)
    jwt_secret: str = "jwt_secret_demo_only_change_me"
    jwt_audience: str = "authenticated"

    # Object storage (S3-compatible)
    storage_bucket: str = "products-pdfs"
    storage_region: str = "us-east-1"
    storage_endpoint_url: Optional[str] = None
    storage_access_key_id: Optional[str] = None
    storage_secret_access_key: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def mpesa_base_url(self) -> str:
        return DARAJA_BASE_URLS[self.mpesa_environment]

    @property
    def pesapal_base_url(self) -> str:
        return PESAPAL_BASE_URLS[self.pesapal_environment]

    def callback_url(self, path: str) -> str:
        """Absolute URL for a provider callback path on this server."""
        return f"{self.public_base_url.rstrip('/')}/{path.lstrip('/')}"


# Global settings instance
settings = Settings()
