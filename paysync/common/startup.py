"""Startup diagnostics: the effective settings (secrets masked) and misconfiguration warnings."""

from collections.abc import Iterable

from pydantic_settings import BaseSettings

from paysync.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_settings(config: BaseSettings) -> dict[str, object]:
    """Settings as a dict; secret-looking values are masked, empty ones are shown as empty."""

    values: dict[str, object] = {}
    for name, value in config.model_dump().items():
        if value and any(marker in name for marker in SECRET_MARKERS):
            values[name] = "<redacted>"
        else:
            values[name] = value
    return values


def gateway_config_warnings(config) -> list[str]:
    warnings = []
    token = config.gateway_access_token
    if not token.strip() or "YOUR_" in token:
        warnings.append("gateway access token is not configured; payment creation will fail")
    if not config.webhook_secret:
        warnings.append("webhook secret is empty; every webhook delivery will be rejected")
    if not config.gateway_notification_url:
        warnings.append("gateway notification url is unset; payments settle only through sync and the sweep")
    return warnings


def log_startup_config(config: BaseSettings, warnings: Iterable[str] = ()) -> None:
    service = getattr(config, "service_name", "unknown-service")
    logger.info("startup_config service=%s config=%s", service, redacted_settings(config))
    for warning in warnings:
        logger.warning("startup_config_warning service=%s: %s", service, warning)
