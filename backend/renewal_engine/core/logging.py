"""Logging configuration for the application"""
import logging

from renewal_engine.core.config import settings


def setup_logging():
    """Configure logging for the application"""
    LOG_LEVEL = settings.LOG_LEVEL.upper()
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    # Silence noisy third-party libraries
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# Channel loggers shared across services
billing_logger = logging.getLogger("billing")
webhook_logger = logging.getLogger("webhook")
scheduler_logger = logging.getLogger("scheduler")
vault_logger = logging.getLogger("vault")
security_logger = logging.getLogger("security")
