from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = Field("sqlite:///vtm_option.db", env="DATABASE_URL")
    APP_TIMEZONE: str = Field("UTC", env="APP_TIMEZONE")
    LOG_LEVEL: str = Field("INFO", env="LOG_LEVEL")

    # Scheduler cadences (seconds)
    SCHEDULER_TICK_SECONDS: float = Field(10, env="SCHEDULER_TICK_SECONDS")
    TRADING_LOOP_INTERVAL: float = Field(60, env="TRADING_LOOP_INTERVAL")
    SIGNAL_PROCESSOR_INTERVAL: float = Field(60, env="SIGNAL_PROCESSOR_INTERVAL")
    CONTRACT_MONITOR_INTERVAL: float = Field(15, env="CONTRACT_MONITOR_INTERVAL")
    MAINTENANCE_INTERVAL_SECONDS: float = Field(600, env="MAINTENANCE_INTERVAL_SECONDS")

    # Signal pipeline
    SIGNAL_BATCH_SIZE: int = Field(10, env="SIGNAL_BATCH_SIZE")
    SIGNAL_RETENTION_DAYS: int = Field(30, env="SIGNAL_RETENTION_DAYS")

    # Sessions and trades
    STALE_SESSION_TICK_MULTIPLE: int = Field(30, env="STALE_SESSION_TICK_MULTIPLE")  # threshold = multiple * tick
    MAX_OPEN_TRADE_SECONDS: float = Field(900, env="MAX_OPEN_TRADE_SECONDS")

    # Broker gateway
    BROKER_MODE: str = Field("paper", env="BROKER_MODE")  # paper, rest
    BROKER_BASE_URL: str = Field("", env="BROKER_BASE_URL")
    BROKER_API_TOKEN: str = Field("", env="BROKER_API_TOKEN")
    BROKER_TIMEOUT_SEC: float = Field(10.0, env="BROKER_TIMEOUT_SEC")
    DEFAULT_ASSET: str = Field("R_100", env="DEFAULT_ASSET")

    # Paper broker
    PAPER_SETTLE_SECONDS: float = Field(60, env="PAPER_SETTLE_SECONDS")
    PAPER_PAYOUT_RATE: float = Field(0.95, env="PAPER_PAYOUT_RATE")
    PAPER_WIN_PROBABILITY: float = Field(0.5, env="PAPER_WIN_PROBABILITY")

    # Money management
    MONEY_MANAGEMENT: str = Field("flat", env="MONEY_MANAGEMENT")  # flat, martingale
    MARTINGALE_MULTIPLIER: float = Field(2.0, env="MARTINGALE_MULTIPLIER")
    MARTINGALE_MAX_STEPS: int = Field(3, env="MARTINGALE_MAX_STEPS")

    # Empty means orders only come from the signal pipeline
    AUTO_ENTRY_DIRECTION: str = Field("", env="AUTO_ENTRY_DIRECTION")

    METRICS_PORT: int = Field(0, env="METRICS_PORT")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator(
        "SCHEDULER_TICK_SECONDS",
        "TRADING_LOOP_INTERVAL",
        "SIGNAL_PROCESSOR_INTERVAL",
        "CONTRACT_MONITOR_INTERVAL",
        "MAINTENANCE_INTERVAL_SECONDS",
        "MAX_OPEN_TRADE_SECONDS",
        "BROKER_TIMEOUT_SEC",
    )
    @classmethod
    def _positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("SIGNAL_BATCH_SIZE", "SIGNAL_RETENTION_DAYS", "STALE_SESSION_TICK_MULTIPLE")
    @classmethod
    def _positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("BROKER_MODE")
    @classmethod
    def _broker_mode(cls, v: str) -> str:
        v = v.lower()
        if v not in ("paper", "rest"):
            raise ValueError("BROKER_MODE must be 'paper' or 'rest'")
        return v

    @field_validator("MONEY_MANAGEMENT")
    @classmethod
    def _money_management(cls, v: str) -> str:
        v = v.lower()
        if v not in ("flat", "martingale"):
            raise ValueError("MONEY_MANAGEMENT must be 'flat' or 'martingale'")
        return v

    @property
    def stale_session_seconds(self) -> float:
        return self.SCHEDULER_TICK_SECONDS * self.STALE_SESSION_TICK_MULTIPLE


settings = Settings()
