"""
Application configuration.

Loads settings from environment variables with sensible defaults.
The entry point loads a .env file first (python-dotenv) when present.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from .errors import ConfigurationError
from .types import OverrunPolicy

ORDER_TYPES = ("GTC", "GTD", "FOK", "FAK")
STRATEGIES = ("threshold", "arbitrage")


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(key: str, default: str) -> list[str]:
    raw = os.getenv(key, default)
    return [s.strip().lower() for s in raw.split(",") if s.strip()]


def parse_slippage(raw: str) -> tuple[float, float]:
    """
    Parse the "up,down" slippage setting.

    A single value applies to both legs; an empty value gives (0, 0.01).

    Raises:
        ValueError: if a part is not a number
    """
    parts = [float(p) for p in raw.split(",") if p.strip()]
    if not parts:
        return (0.0, 0.01)
    if len(parts) == 1:
        return (parts[0], parts[0])
    return (parts[0], parts[1])


@dataclass
class BotConfig:
    """Bot configuration."""

    # API credentials
    pm_private_key: str = ""
    pm_funder: str = ""
    pm_signature_type: int = 1
    pm_api_key: str = ""
    pm_api_secret: str = ""
    pm_passphrase: str = ""

    # URLs
    pm_rest_url: str = "https://clob.polymarket.com"
    gamma_api_url: str = "https://gamma-api.polymarket.com"
    chain_id: int = 137

    # Markets
    crypto_symbols: list[str] = field(default_factory=lambda: ["btc", "eth", "xrp", "sol"])
    market_slug_template: str = "{symbol}-updown-5m-{window_start_s}"

    # Cadence
    window_secs: int = 300
    cycle_deadline_margin_secs: float = 5.0
    cycle_start_delay_secs: float = 1.0
    overrun_policy: OverrunPolicy = OverrunPolicy.CANCEL_PRIOR
    shutdown_grace_secs: float = 10.0
    eval_interval_secs: float = 15.0  # 0 -> one evaluation per cycle

    # Market data
    stale_threshold_secs: Optional[float] = None  # None -> half the window
    http_timeout_secs: float = 5.0
    max_attempts: int = 4
    backoff_base_secs: float = 0.25
    backoff_max_secs: float = 4.0

    # Risk limits (outcome shares)
    max_position: float = 100.0
    max_order_size: float = 50.0
    min_order_size: float = 5.0
    max_trades_per_day: int = 50
    drift_tolerance: float = 1e-6

    # Strategy
    strategy: str = "threshold"
    strategy_version: str = ""  # empty -> "{strategy}-v1"
    entry_price: float = 0.45
    take_profit_price: float = 0.60
    stop_loss_price: float = 0.20
    target_size: float = 20.0
    wind_down_secs: float = 60.0

    # Arbitrage
    min_profit_threshold: float = 0.001
    slippage: tuple[float, float] = (0.0, 0.01)
    position_balance_threshold: float = 2.0

    # Orders
    order_type: str = "GTC"
    gtd_expiration_secs: int = 300

    # Operations
    kill_switch: bool = False
    dry_run: bool = True
    journal_path: str = ""
    record_retention_hours: float = 24.0

    # Logging
    log_level: str = "INFO"

    def __post_init__(self):
        if not self.strategy_version:
            self.strategy_version = f"{self.strategy}-v1"

    @property
    def window_ms(self) -> int:
        return int(self.window_secs * 1000)

    @property
    def stale_threshold_ms(self) -> int:
        if self.stale_threshold_secs is None:
            return self.window_ms // 2
        return int(self.stale_threshold_secs * 1000)

    @property
    def wind_down_ms(self) -> int:
        return int(self.wind_down_secs * 1000)

    @property
    def deadline_margin_ms(self) -> int:
        return int(self.cycle_deadline_margin_secs * 1000)

    @property
    def record_retention_ms(self) -> int:
        return int(self.record_retention_hours * 3_600_000)

    @property
    def eval_interval_ms(self) -> int:
        return int(self.eval_interval_secs * 1000)

    @classmethod
    def from_env(cls) -> "BotConfig":
        """Load config from environment variables."""
        stale_raw = os.getenv("STALE_THRESHOLD_SECS", "")
        policy_raw = os.getenv("OVERRUN_POLICY", OverrunPolicy.CANCEL_PRIOR.value).strip().lower()

        try:
            overrun_policy = OverrunPolicy(policy_raw)
        except ValueError:
            overrun_policy = None  # reported by validate()

        try:
            config = cls(
                # Credentials
                pm_private_key=os.getenv("PM_PRIVATE_KEY", ""),
                pm_funder=os.getenv("PM_FUNDER", ""),
                pm_signature_type=int(os.getenv("PM_SIGNATURE_TYPE", "1")),
                pm_api_key=os.getenv("PM_API_KEY", ""),
                pm_api_secret=os.getenv("PM_API_SECRET", ""),
                pm_passphrase=os.getenv("PM_PASSPHRASE", ""),

                # URLs
                pm_rest_url=os.getenv("PM_REST_URL", "https://clob.polymarket.com"),
                gamma_api_url=os.getenv("GAMMA_API_URL", "https://gamma-api.polymarket.com"),
                chain_id=int(os.getenv("CHAIN_ID", "137")),

                # Markets
                crypto_symbols=_env_list("CRYPTO_SYMBOLS", "btc,eth,xrp,sol"),
                market_slug_template=os.getenv(
                    "MARKET_SLUG_TEMPLATE",
                    "{symbol}-updown-5m-{window_start_s}",
                ),

                # Cadence
                window_secs=int(os.getenv("WINDOW_SECS", "300")),
                cycle_deadline_margin_secs=float(os.getenv("CYCLE_DEADLINE_MARGIN_SECS", "5")),
                cycle_start_delay_secs=float(os.getenv("CYCLE_START_DELAY_SECS", "1")),
                shutdown_grace_secs=float(os.getenv("SHUTDOWN_GRACE_SECS", "10")),
                eval_interval_secs=float(os.getenv("EVAL_INTERVAL_SECS", "15")),

                # Market data
                stale_threshold_secs=float(stale_raw) if stale_raw else None,
                http_timeout_secs=float(os.getenv("HTTP_TIMEOUT_SECS", "5")),
                max_attempts=int(os.getenv("MAX_ATTEMPTS", "4")),
                backoff_base_secs=float(os.getenv("BACKOFF_BASE_SECS", "0.25")),
                backoff_max_secs=float(os.getenv("BACKOFF_MAX_SECS", "4")),

                # Risk
                max_position=float(os.getenv("MAX_POSITION", "100")),
                max_order_size=float(os.getenv("MAX_ORDER_SIZE", "50")),
                min_order_size=float(os.getenv("MIN_ORDER_SIZE", "5")),
                max_trades_per_day=int(os.getenv("MAX_TRADES_PER_DAY", "50")),
                drift_tolerance=float(os.getenv("DRIFT_TOLERANCE", "1e-6")),

                # Strategy
                strategy=os.getenv("STRATEGY", "threshold").strip().lower(),
                strategy_version=os.getenv("STRATEGY_VERSION", ""),
                entry_price=float(os.getenv("ENTRY_PRICE", "0.45")),
                take_profit_price=float(os.getenv("TAKE_PROFIT_PRICE", "0.60")),
                stop_loss_price=float(os.getenv("STOP_LOSS_PRICE", "0.20")),
                target_size=float(os.getenv("TARGET_SIZE", "20")),
                wind_down_secs=float(os.getenv("WIND_DOWN_SECS", "60")),

                # Arbitrage
                min_profit_threshold=float(os.getenv("MIN_PROFIT_THRESHOLD", "0.001")),
                slippage=parse_slippage(os.getenv("SLIPPAGE", "0,0.01")),
                position_balance_threshold=float(os.getenv("POSITION_BALANCE_THRESHOLD", "2")),

                # Orders
                order_type=os.getenv("ORDER_TYPE", "GTC").strip().upper(),
                gtd_expiration_secs=int(os.getenv("GTD_EXPIRATION_SECS", "300")),

                # Operations
                kill_switch=_env_bool("KILL_SWITCH", False),
                dry_run=_env_bool("DRY_RUN", True),
                journal_path=os.getenv("JOURNAL_PATH", ""),
                record_retention_hours=float(os.getenv("RECORD_RETENTION_HOURS", "24")),

                log_level=os.getenv("LOG_LEVEL", "INFO"),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment value: {e}") from e
        config.overrun_policy = overrun_policy
        return config

    def validate(self) -> list[str]:
        """
        Validate configuration.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        if not self.dry_run and not self.pm_private_key:
            errors.append("PM_PRIVATE_KEY is required unless DRY_RUN is enabled")

        if not self.crypto_symbols:
            errors.append("CRYPTO_SYMBOLS must name at least one market")

        if self.window_secs < 60:
            errors.append("WINDOW_SECS must be at least 60")

        if self.cycle_deadline_margin_secs < 0 or self.cycle_deadline_margin_secs >= self.window_secs:
            errors.append("CYCLE_DEADLINE_MARGIN_SECS must be within the window")

        if self.overrun_policy is None:
            choices = ", ".join(p.value for p in OverrunPolicy)
            errors.append(f"OVERRUN_POLICY must be one of: {choices}")

        if self.stale_threshold_ms <= 0:
            errors.append("STALE_THRESHOLD_SECS must be positive")

        if self.max_attempts < 1:
            errors.append("MAX_ATTEMPTS must be at least 1")

        if self.max_position <= 0:
            errors.append("MAX_POSITION must be positive")

        if self.max_order_size <= 0:
            errors.append("MAX_ORDER_SIZE must be positive")

        if self.min_order_size < 0 or self.min_order_size > self.max_order_size:
            errors.append("MIN_ORDER_SIZE must be between 0 and MAX_ORDER_SIZE")

        if self.max_trades_per_day < 0:
            errors.append("MAX_TRADES_PER_DAY must be non-negative")

        for name, price in (
            ("ENTRY_PRICE", self.entry_price),
            ("TAKE_PROFIT_PRICE", self.take_profit_price),
            ("STOP_LOSS_PRICE", self.stop_loss_price),
        ):
            if not 0.0 < price < 1.0:
                errors.append(f"{name} must be between 0 and 1")

        if self.target_size < 0 or self.target_size > self.max_position:
            errors.append("TARGET_SIZE must be between 0 and MAX_POSITION")

        if self.strategy not in STRATEGIES:
            errors.append(f"STRATEGY must be one of: {', '.join(STRATEGIES)}")

        if self.eval_interval_secs < 0 or self.eval_interval_secs >= self.window_secs:
            errors.append("EVAL_INTERVAL_SECS must be between 0 and WINDOW_SECS")

        if not 0.0 <= self.min_profit_threshold < 1.0:
            errors.append("MIN_PROFIT_THRESHOLD must be between 0 and 1")

        if any(not 0.0 <= s < 1.0 for s in self.slippage):
            errors.append("SLIPPAGE values must be between 0 and 1")

        if self.position_balance_threshold < 0:
            errors.append("POSITION_BALANCE_THRESHOLD must be non-negative")

        if self.record_retention_hours * 3600 < self.window_secs:
            errors.append("RECORD_RETENTION_HOURS must cover at least one window")

        if self.order_type not in ORDER_TYPES:
            errors.append(f"ORDER_TYPE must be one of: {', '.join(ORDER_TYPES)}")

        if "{window_start_s}" not in self.market_slug_template:
            errors.append("MARKET_SLUG_TEMPLATE must contain {window_start_s}")

        return errors
