"""
GlitchTip Error Monitoring Utilities

Initialization and helper functions for error tracking.
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from marketplace_sync.core.logger import setup_logger

logger = setup_logger(__name__)


def init_monitoring(dsn: Optional[str], environment: str) -> bool:
    """
    Initialize GlitchTip (Sentry-compatible) error monitoring.

    Args:
        dsn: GlitchTip DSN, monitoring stays disabled when empty
        environment: Deployment environment name

    Returns:
        True if monitoring was initialized
    """
    if not dsn:
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                LoggingIntegration(
                    level=None,  # Capture all log levels as breadcrumbs
                    event_level=logging.ERROR  # Send ERROR logs as events
                ),
            ],
            traces_sample_rate=0.1,
            profiles_sample_rate=0.0,
            send_default_pii=False,
        )
        logger.info("GlitchTip error monitoring initialized")
        return True
    except Exception as e:
        logger.error(f"Failed to initialize GlitchTip: {e}")
        return False


def set_sync_context(
    platform: str,
    owner_id: str,
    account_id: Optional[str] = None,
    **extra_tags
) -> None:
    """
    Set sync-specific context for error tracking.

    Args:
        platform: Marketplace platform key
        owner_id: Owning user of the accounts being synced
        account_id: Account currently being processed
        **extra_tags: Additional tags to add
    """
    try:
        sentry_sdk.set_tag("sync.platform", platform)
        sentry_sdk.set_tag("sync.owner_id", owner_id)
        if account_id:
            sentry_sdk.set_tag("sync.account_id", account_id)

        for key, value in extra_tags.items():
            sentry_sdk.set_tag(key, value)

        context_data = {
            "platform": platform,
            "owner_id": owner_id,
            "account_id": account_id,
        }
        context_data.update(extra_tags)
        sentry_sdk.set_context("sync", context_data)

    except Exception as e:
        logger.warning(f"Failed to set sync context: {e}")


def capture_exception(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error"
) -> None:
    """
    Capture exception with optional context.

    Args:
        error: Exception to capture
        context: Additional context data
        level: Severity level (error, warning, info)
    """
    try:
        if context:
            with sentry_sdk.new_scope() as scope:
                scope.set_context("custom", context)
                scope.level = level
                sentry_sdk.capture_exception(error)
        else:
            sentry_sdk.capture_exception(error, level=level)
    except Exception as e:
        logger.warning(f"Failed to capture exception: {e}")
