"""Central environment-driven settings for the payment core.

The process loads this once at startup. Every value can be overridden with a
`PAYCORE_`-prefixed environment variable (see `.env.example`).
"""

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class PaymentSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "paycore"
    log_level: str = "INFO"
    database_url: str = "sqlite+pysqlite:///./paycore.db"
    # "memory" keeps transactions in-process, "sql" uses `database_url`.
    transaction_store: str = "memory"
    tracing_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    vnp_tmn_code: str = "YOUR_TMN_CODE_HERE"
    vnp_hash_secret: SecretStr = SecretStr("YOUR_HASH_SECRET_HERE")
    vnp_pay_url: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    vnp_api_url: str = "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction"
    vnp_return_url: str = "http://localhost:8000/vnpay/return"
    vnp_version: str = "2.1.0"
    vnp_locale: str = "vn"
    vnp_currency: str = "VND"
    # Form-encode keys and values before hashing, as live VNPay terminals expect.
    vnp_encode_signed_values: bool = False

    amount_multiplier: int = 100
    payment_expiry_minutes: int = 15
    gateway_timeout_seconds: float = 15.0
    # Callbacks whose signed pay date is older than this are treated as replays; 0 disables.
    callback_max_age_seconds: int = 86400

    cancelled_response_codes: list[str] = ["24"]
    failed_response_codes: list[str] = ["07", "09", "10", "11", "12", "13", "51", "65", "75", "79", "99"]

    model_config = SettingsConfigDict(env_prefix="PAYCORE_", env_file=".env", extra="ignore")


settings = PaymentSettings()
