"""Process entrypoint: `uvicorn paycore.services.payments.main:app`."""

from paycore.common.config import settings
from paycore.common.logging import configure_logging
from paycore.common.startup import log_startup_config
from paycore.common.tracing import setup_tracing
from paycore.services.payments.api import create_app
from paycore.services.payments.bootstrap import build_payment_service

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    settings,
    [
        "service_name",
        "transaction_store",
        "database_url",
        "vnp_tmn_code",
        "vnp_hash_secret",
        "vnp_pay_url",
        "vnp_api_url",
        "vnp_return_url",
        "payment_expiry_minutes",
        "gateway_timeout_seconds",
        "callback_max_age_seconds",
    ],
)
service = build_payment_service(settings)
app = create_app(service, service_name=settings.service_name)
