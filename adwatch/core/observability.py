"""
Logging and tracing setup for AdWatch entry points.

The CLI and the API call `setup_logging()` once, then `setup_logfire()`.
Without LOGFIRE_TOKEN tracing stays local: `logfire.span(...)` calls in
the orchestrator still work but nothing is exported.

Environment Variables:
    LOGFIRE_TOKEN: Logfire write token; traces are only exported when set
    LOGFIRE_ENVIRONMENT: development, staging or production
    LOG_LEVEL: Root log level (default INFO)
"""

import logging
import os
from typing import Optional

import logfire

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_logfire_configured = False


def setup_logging(debug: bool = False) -> None:
    """Configure root logging; --debug wins over LOG_LEVEL."""
    level_name = 'DEBUG' if debug else os.environ.get('LOG_LEVEL', 'INFO').upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT
    )


def setup_logfire(
    environment: Optional[str] = None,
    service_name: str = "adwatch"
) -> bool:
    """
    Export monitoring spans to Logfire when a token is available.

    Safe to call more than once; later calls are no-ops.

    Returns:
        True when Logfire export is active
    """
    global _logfire_configured

    if _logfire_configured:
        return True

    token = os.environ.get("LOGFIRE_TOKEN")
    if not token:
        logger.info("LOGFIRE_TOKEN not set, monitoring spans stay local")
        return False

    env = environment or os.environ.get("LOGFIRE_ENVIRONMENT", "development")

    try:
        logfire.configure(
            token=token,
            service_name=service_name,
            environment=env,
            send_to_logfire=True,
        )
        logfire.instrument_pydantic()
    except Exception as e:
        logger.error(f"Logfire setup failed, continuing without export: {e}")
        return False

    _logfire_configured = True
    logger.info(f"Logfire export enabled for {service_name} ({env})")
    return True
