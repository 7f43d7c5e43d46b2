from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "PowerGuard"

    # Geofence debounce: whichever threshold is hit first confirms an exit
    exit_debounce_samples: int = 3
    exit_debounce_seconds: float = 120.0

    # Samples worse than this are treated as "no location"
    max_location_accuracy_m: float = 500.0
    max_location_age_seconds: float = 600.0

    # Auto-shutdown
    default_grace_period_seconds: int = 900  # 15 minutes
    min_grace_period_seconds: int = 10

    # Commands
    command_timeout_seconds: float = 5.0
    command_max_retries: int = 2
    command_backoff_seconds: float = 1.0  # 1s, 2s, ...

    # Notifications
    notification_history_size: int = 1000
    recent_notifications_size: int = 50

    # Background ticks
    tick_budget_seconds: float = 25.0
    tick_interval_seconds: float = 60.0

    # Storage
    sqlite_path: str = Field(default="powerguard.db")
    log_path: str = "powerguard.log"
    log_level: str = "INFO"
    log_max_bytes: int = 2_000_000
    log_backups: int = 5

    # Transport mode: "sim" or "sonoff"
    transport_mode: str = "sim"
    sim_outlet_count: int = 4

    # Sonoff DIY (eWeLink LAN) multi-channel strip
    sonoff_ip: str = "192.168.1.19"
    sonoff_port: int = 8081
    sonoff_device_id: str = "1000b8d61a"
    sonoff_channels: int = 4


settings = Settings()
