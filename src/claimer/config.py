import logging
import os
import tomllib
from collections.abc import Mapping
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    PositiveInt,
    SecretStr,
    ValidationError,
    field_validator,
)
from stellar_sdk import Operation

from claimer.constants import Mode
from claimer.errors import ConfigInvalid, ConfigMissing

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

# (section, key) in config.toml -> Settings field
TOML_KEYS = {
    ("network", "horizon_url"): "horizon_url",
    ("network", "passphrase"): "network_passphrase",
    ("dispatch", "mode"): "mode",
    ("dispatch", "batch_size"): "batch_size",
    ("dispatch", "batch_interval_ms"): "batch_interval_ms",
    ("dispatch", "lead_time_ms"): "lead_time_ms",
    ("dispatch", "poll_interval_ms"): "poll_interval_ms",
    ("dispatch", "max_retries"): "max_retries",
    ("dispatch", "retry_delay_ms"): "retry_delay_ms",
    ("dispatch", "rate_limit_backoff_ms"): "rate_limit_backoff_ms",
    ("dispatch", "tx_timeout_s"): "tx_timeout_s",
    ("dispatch", "claim_required"): "claim_required",
    ("time", "ntp_server"): "ntp_server",
    ("time", "ntp_timeout_s"): "ntp_timeout_s",
    ("logging", "file"): "log_file",
    ("logging", "level"): "log_level",
    ("control", "host"): "control_host",
    ("control", "port"): "control_port",
}

# Environment variable -> Settings field. Later entries win, so the legacy
# DESTINATION_ADDRESS spelling only applies when DESTINATION is unset.
ENV_KEYS = [
    ("MNEMONIC", "mnemonic"),
    ("DESTINATION_ADDRESS", "destination"),
    ("DESTINATION", "destination"),
    ("AMOUNT", "amount"),
    ("FEE", "fee"),
    ("UNLOCK_TIME", "unlock_time"),
    ("MODE", "mode"),
    ("THREADS_PER_BATCH", "batch_size"),
    ("BATCH_INTERVAL", "batch_interval_ms"),
    ("FIRE_BEFORE", "lead_time_ms"),
    ("CHECK_INTERVAL", "poll_interval_ms"),
    ("MAX_RETRIES", "max_retries"),
    ("RETRY_DELAY", "retry_delay_ms"),
    ("RATE_LIMIT_BACKOFF", "rate_limit_backoff_ms"),
    ("TX_TIMEOUT", "tx_timeout_s"),
    ("CLAIM_REQUIRED", "claim_required"),
    ("HORIZON_URL", "horizon_url"),
    ("NETWORK_PASSPHRASE", "network_passphrase"),
    ("NTP_SERVER", "ntp_server"),
    ("NTP_TIMEOUT", "ntp_timeout_s"),
    ("LOG_FILE", "log_file"),
    ("LOG_LEVEL", "log_level"),
    ("CONTROL_HOST", "control_host"),
    ("CONTROL_PORT", "control_port"),
]

REQUIRED = {
    "mnemonic": "MNEMONIC",
    "destination": "DESTINATION",
    "amount": "AMOUNT",
    "fee": "FEE",
}


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    mnemonic: SecretStr
    destination: str
    amount: Decimal = Field(gt=0)
    fee: Decimal = Field(gt=0)  # per operation, native units
    unlock_time: time | None = None

    mode: Mode = Mode.BURST
    batch_size: PositiveInt = 5
    batch_interval_ms: PositiveInt = 2000
    lead_time_ms: NonNegativeInt = 1200
    poll_interval_ms: PositiveInt = 5000
    max_retries: PositiveInt = 5
    retry_delay_ms: NonNegativeInt = 1000
    rate_limit_backoff_ms: NonNegativeInt = 2000
    tx_timeout_s: PositiveInt = 30
    claim_required: bool = True

    horizon_url: str
    network_passphrase: str
    ntp_server: str
    ntp_timeout_s: float = Field(gt=0, le=10)
    log_file: str
    log_level: str = "INFO"
    control_host: str = "127.0.0.1"
    control_port: int = Field(default=0, ge=0, le=65535)

    @field_validator("unlock_time", mode="before")
    @classmethod
    def _parse_unlock_time(cls, v: Any) -> Any:
        if v is None or isinstance(v, time):
            return v
        parts = str(v).strip().split(":")
        if len(parts) != 3 or not all(p.isdigit() for p in parts):
            raise ValueError("must be in HH:MM:SS format (UTC)")
        hh, mm, ss = (int(p) for p in parts)
        return time(hh, mm, ss, tzinfo=timezone.utc)

    @field_validator("amount", "fee")
    @classmethod
    def _seven_decimals(cls, v: Decimal) -> Decimal:
        Operation.to_xdr_amount(v)  # raises on more than 7 fractional digits
        return v

    @field_validator("mode", mode="before")
    @classmethod
    def _lower_mode(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level {v!r}")
        return level

    @property
    def fee_stroops(self) -> int:
        return Operation.to_xdr_amount(self.fee)

    @property
    def batch_interval(self) -> timedelta:
        return timedelta(milliseconds=self.batch_interval_ms)

    @property
    def lead_time(self) -> timedelta:
        return timedelta(milliseconds=self.lead_time_ms)

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(milliseconds=self.poll_interval_ms)

    @property
    def retry_delay(self) -> timedelta:
        return timedelta(milliseconds=self.retry_delay_ms)

    @property
    def rate_limit_backoff(self) -> timedelta:
        return timedelta(milliseconds=self.rate_limit_backoff_ms)

    @property
    def tx_validity(self) -> timedelta:
        return timedelta(seconds=self.tx_timeout_s)

    def target_instant(self, today: date) -> datetime:
        """UNLOCK_TIME on the given UTC date."""
        if self.unlock_time is None:
            raise ValueError("no UNLOCK_TIME configured")
        return datetime.combine(today, self.unlock_time)


def read_defaults(path: Path = config_file) -> dict[str, Any]:
    try:
        cfg = tomllib.loads(Path(path).read_text())
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigInvalid(f"Cannot read config file {path}: {e}") from e
    out: dict[str, Any] = {}
    for (section, key), field in TOML_KEYS.items():
        if key in cfg.get(section, {}):
            out[field] = cfg[section][key]
    return out


def load_settings(env: Mapping[str, str] | None = None, *, path: Path = config_file) -> Settings:
    """Merge config.toml defaults with environment overrides and validate.

    Raises ConfigMissing when a required key is absent and ConfigInvalid when
    a value does not validate. Both are InitializationFailures.
    """
    env = os.environ if env is None else env
    values = read_defaults(path)
    for var, field in ENV_KEYS:
        raw = env.get(var)
        if raw is not None and raw.strip() != "":
            values[field] = raw.strip()

    missing = [var for field, var in REQUIRED.items() if not values.get(field)]
    if str(values.get("mode", Mode.BURST)).strip().lower() == Mode.BURST and not values.get("unlock_time"):
        missing.append("UNLOCK_TIME")
    if missing:
        raise ConfigMissing(f"Missing required environment variables: {', '.join(missing)}", tuple(missing))

    try:
        return Settings.model_validate(values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}" for err in e.errors()
        )
        raise ConfigInvalid(f"Invalid configuration: {problems}") from e
