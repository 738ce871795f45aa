"""Startup-time helpers for safe config logging."""

from sqlalchemy.engine import make_url

from orderpay.common.config import CommonSettings
from orderpay.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token")


def _safe_value(name: str, value) -> str:
    """Render one setting for logs, hiding secrets and DSN passwords."""

    if value is None:
        return "<unset>"
    if name.endswith("_dsn"):
        return make_url(str(value)).render_as_string(hide_password=True)
    # Key ids are public identifiers; everything else secret-looking is hidden.
    if name.endswith("_key_id"):
        return str(value)
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def log_startup_config(config: CommonSettings, fields: list[str]) -> None:
    """Log selected settings for quick troubleshooting."""

    rendered = {"service": config.service_name}
    for field in fields:
        rendered[field] = _safe_value(field, getattr(config, field))
    logger.info("startup_config=%s", rendered)
