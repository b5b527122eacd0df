import os
import logging
from logging.config import dictConfig
import json

import sentry_sdk

from social.graze.xrpc.app.config import Settings


def configure_logging(level: int = logging.INFO):
    """Configure from LOGGING_CONFIG_FILE when set, otherwise log at ``level``."""
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig()
    logging.getLogger().setLevel(level)


def configure_sentry(settings: Settings) -> bool:
    """Initialize Sentry when a DSN is configured. Returns whether it was."""
    if settings.sentry_dsn is None or len(settings.sentry_dsn) == 0:
        return False

    sentry_sdk.init(dsn=settings.sentry_dsn, send_default_pii=False)
    return True
