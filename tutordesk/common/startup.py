"""Boot-time config snapshot, logged once per process."""

from pydantic_settings import BaseSettings

from tutordesk.common.config import settings
from tutordesk.common.logging import logger

SECRET_MARKERS = ("key", "token", "secret", "password", "dsn")


def redacted(name: str, value) -> str:
    if value in (None, ""):
        return "<unset>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def log_startup_config(service_name: str, fields: list[str], source: BaseSettings = settings) -> dict[str, str]:
    """Log the named settings fields; secret-like names are never printed."""

    config = {"service": service_name}
    for name in fields:
        config[name] = redacted(name, getattr(source, name))
    logger.info("startup_config=%s", config)
    return config
