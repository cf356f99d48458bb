"""Startup-time helpers for safe config logging."""

from pydantic import BaseModel, SecretStr

from paycore.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token")


def _safe_value(name: str, value) -> str:
    """Render one setting with redaction for secret-like fields."""

    if value is None:
        return "<unset>"
    if isinstance(value, SecretStr) or any(marker in name.lower() for marker in SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def log_startup_config(service_name: str, config: BaseModel, keys: list[str]) -> dict[str, str]:
    """Log selected settings fields for quick troubleshooting."""

    rendered = {"service": service_name}
    for key in keys:
        rendered[key] = _safe_value(key, getattr(config, key, None))
    logger.info("startup_config=%s", rendered)
    return rendered
