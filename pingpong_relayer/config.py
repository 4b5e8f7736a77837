"""
Configuration for the ping/pong relayer.

Settings come from ``PINGPONG_*`` environment variables (see ``ENV_VARS``)
and can be overridden field by field, which is what the CLI does with its
options.
"""
import os
import urllib.parse
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import pydantic
from pydantic import BaseModel, Field, SecretStr, field_validator

from .exceptions import ConfigError

ENV_PREFIX = "PINGPONG_"

# Original deployment values
DEFAULT_TABLE_NAME = "ping-pong"
DEFAULT_AWS_REGION = "us-east-1"


class RetryStatePolicy(str, Enum):
    """
    What happens to the stored (nonce, fee rate) pair after a failed attempt.

    RESET_ON_ERROR keeps the pair and escalates the fee only when the
    confirmation wait times out; any other submission error clears it so the
    next attempt starts from a fresh nonce. PRESERVE keeps the pair across
    every error and always retries as a replacement.
    """
    RESET_ON_ERROR = "reset_on_error"
    PRESERVE = "preserve"


class StoreBackend(str, Enum):
    MEMORY = "memory"
    FILE = "file"
    DYNAMODB = "dynamodb"


class RetryPolicy(BaseModel):
    """Retry budget, backoff and fee escalation for response submission."""
    max_retries: int = Field(5, ge=1)
    initial_delay_ms: int = Field(1000, ge=0)
    max_delay_ms: int = Field(10000, ge=0)
    jitter_ms: int = Field(1000, ge=0)
    fee_escalation: Decimal = Field(Decimal("1.15"), gt=1)
    confirmation_timeout: float = Field(120.0, gt=0)
    retry_state_policy: RetryStatePolicy = RetryStatePolicy.RESET_ON_ERROR


def _is_local(host: str) -> bool:
    return host in ("localhost", "127.0.0.1", "::1")


def validate_service_url(name: str, url: str) -> str:
    """
    Require https:// for remote endpoints.

    Plain http is accepted for loopback hosts, or anywhere when
    PINGPONG_INSECURE_RPC=1 is set for development.

    Raises:
        ValueError: If the URL is malformed or insecure
    """
    parsed = urllib.parse.urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"{name} is not a valid URL: {url!r}")
    if parsed.scheme != "https" and not _is_local(parsed.hostname or ""):
        if os.environ.get(f"{ENV_PREFIX}INSECURE_RPC") != "1":
            raise ValueError(
                f"{name} must use https:// for security (got: {parsed.scheme}://). "
                f"Set {ENV_PREFIX}INSECURE_RPC=1 to allow it for development."
            )
    return url


class RelayerConfig(BaseModel):
    """All relayer settings."""

    # Chain
    rpc_url: Optional[str] = None
    contract_address: Optional[str] = None
    private_key: Optional[SecretStr] = None
    responder_address: Optional[str] = None
    chain_id: Optional[int] = None
    start_block: int = Field(0, ge=0)

    # Intent store
    store_backend: StoreBackend = StoreBackend.FILE
    store_path: Optional[str] = None
    dynamodb_table: str = DEFAULT_TABLE_NAME
    aws_region: str = DEFAULT_AWS_REGION

    # Event feed and orchestration
    poll_interval: float = Field(10.0, gt=0)
    log_chunk_size: int = Field(2000, ge=1)
    live_max_consecutive_errors: int = Field(5, ge=1)
    reconcile_interval: float = Field(300.0, ge=0)
    shutdown_grace: float = Field(30.0, ge=0)
    max_in_flight: Optional[int] = Field(None, ge=1)

    # Operator surface
    alert_webhook_url: Optional[str] = None
    log_level: str = "INFO"

    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @field_validator("rpc_url")
    @classmethod
    def _check_rpc_url(cls, value: Optional[str]) -> Optional[str]:
        return validate_service_url("rpc_url", value) if value else value

    @field_validator("alert_webhook_url")
    @classmethod
    def _check_webhook_url(cls, value: Optional[str]) -> Optional[str]:
        return validate_service_url("alert_webhook_url", value) if value else value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level

    def require_chain(self) -> None:
        """
        Check that everything needed to talk to the chain is configured.

        Raises:
            ConfigError: If the RPC URL, contract address or signing key is missing
        """
        missing = [
            name for name, value in (
                ("rpc_url", self.rpc_url),
                ("contract_address", self.contract_address),
                ("private_key", self.private_key),
            ) if not value
        ]
        if missing:
            env_names = ", ".join(f"{ENV_PREFIX}{name.upper()}" for name in missing)
            raise ConfigError(f"Missing chain configuration: {env_names}")

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        **overrides: Any
    ) -> "RelayerConfig":
        """
        Load configuration from the environment.

        Args:
            environ: Mapping to read instead of os.environ
            **overrides: Field values that win over the environment; None values are ignored

        Returns:
            Validated configuration

        Raises:
            ConfigError: If a value fails validation
        """
        env = os.environ if environ is None else environ
        data: Dict[str, Any] = {}
        retry: Dict[str, Any] = {}

        for field_name, env_name in ENV_VARS.items():
            raw = env.get(ENV_PREFIX + env_name)
            if raw is None or raw == "":
                continue
            if field_name in RetryPolicy.model_fields:
                retry[field_name] = raw
            else:
                data[field_name] = raw

        for field_name, value in overrides.items():
            if value is None:
                continue
            if field_name in RetryPolicy.model_fields:
                retry[field_name] = value
            else:
                data[field_name] = value

        if retry:
            data["retry"] = retry

        try:
            return cls.model_validate(data)
        except pydantic.ValidationError as e:
            raise ConfigError(f"Invalid relayer configuration: {e}") from e


# field name -> environment variable suffix
ENV_VARS: Dict[str, str] = {
    "rpc_url": "RPC_URL",
    "contract_address": "CONTRACT_ADDRESS",
    "private_key": "PRIVATE_KEY",
    "responder_address": "RESPONDER_ADDRESS",
    "chain_id": "CHAIN_ID",
    "start_block": "START_BLOCK",
    "store_backend": "STORE_BACKEND",
    "store_path": "STORE_PATH",
    "dynamodb_table": "DYNAMODB_TABLE",
    "aws_region": "AWS_REGION",
    "poll_interval": "POLL_INTERVAL",
    "log_chunk_size": "LOG_CHUNK_SIZE",
    "live_max_consecutive_errors": "LIVE_MAX_ERRORS",
    "reconcile_interval": "RECONCILE_INTERVAL",
    "shutdown_grace": "SHUTDOWN_GRACE",
    "max_in_flight": "MAX_IN_FLIGHT",
    "alert_webhook_url": "ALERT_WEBHOOK_URL",
    "log_level": "LOG_LEVEL",
    "max_retries": "MAX_RETRIES",
    "initial_delay_ms": "INITIAL_DELAY_MS",
    "max_delay_ms": "MAX_DELAY_MS",
    "jitter_ms": "JITTER_MS",
    "fee_escalation": "FEE_ESCALATION",
    "confirmation_timeout": "CONFIRMATION_TIMEOUT",
    "retry_state_policy": "RETRY_STATE_POLICY",
}
