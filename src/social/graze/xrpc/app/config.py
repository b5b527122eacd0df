"""
Configuration Module for the XRPC client

This module defines the configuration for the XRPC client, using Pydantic for
settings validation. Values are loaded from environment variables with defaults
suitable for talking to the public network.

Key configuration areas include:
- Service and directory endpoints
- Request behaviour (timeouts, DPoP proof lifetime, nonce retry allow-list)
- Monitoring and error reporting
"""

import logging
from typing import Annotated, List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Settings for XRPC clients and identity resolution.

    Environment variables are automatically mapped to settings fields. For example,
    the PLC directory can be set with the PLC_HOSTNAME environment variable.
    """

    debug: bool = False
    """
    Enable debug logging of every request and response in the middleware chain.
    Set with DEBUG=true environment variable.
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution. A base URL with an
    explicit scheme is also accepted, for local directories.
    Set with PLC_HOSTNAME environment variable.
    """

    default_service: str = "https://bsky.social"
    """
    Service used for unauthenticated calls when no credential names one.
    Set with DEFAULT_SERVICE environment variable.
    """

    user_agent: str = "graze-xrpc"
    """Value of the User-Agent header sent with every request."""

    request_timeout: float = 30.0
    """
    Total timeout in seconds for a single HTTP attempt.
    Set with REQUEST_TIMEOUT environment variable.
    """

    dpop_proof_lifetime: int = 30
    """
    Validity period in seconds written into the exp claim of DPoP proofs.
    Set with DPOP_PROOF_LIFETIME environment variable.
    """

    dpop_retry_error_codes: Annotated[List[str], NoDecode] = ["use_dpop_nonce"]
    """
    Error codes that, together with a fresh DPoP-Nonce header, trigger the single
    retry of a request. Set with DPOP_RETRY_ERROR_CODES as comma-separated values.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_backend: Literal["telegraf", "noop"] = "noop"
    """
    Metrics backend used by the request chain.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    @field_validator("dpop_retry_error_codes", mode="before")
    @classmethod
    def decode_dpop_retry_error_codes(cls, v) -> List[str]:
        """
        Accept either a list of codes or a comma-separated string.

        Raises:
            ValueError: If the resulting allow-list is empty
        """
        if isinstance(v, str):
            v = [code.strip() for code in v.split(",")]
        codes = [code for code in v if code]
        if len(codes) == 0:
            raise ValueError("dpop_retry_error_codes must name at least one code")
        return codes
