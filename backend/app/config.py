from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/bizhub.db"
    sqlite_busy_timeout: float = 30.0

    # Auth
    secret_key: str = "dev-secret-change-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    token_audience: str = "bizhub-meetings"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = ["http://localhost:5173"]
    public_base_url: str = "http://localhost:5173"
    log_level: str = "INFO"

    # Video provider: "livekit" or "daily"
    video_provider: str = "livekit"

    # LiveKit
    livekit_url: str = ""
    livekit_api_key: str = ""
    livekit_api_secret: str = ""
    room_empty_timeout_seconds: int = 300

    # Daily
    daily_api_key: str = ""
    daily_api_url: str = "https://api.daily.co/v1"

    # Meetings
    default_meeting_minutes: int = 40
    default_max_participants: int = 10
    default_cancellation_policy_hours: int = 3
    all_day_minutes: int = 24 * 60
    unrestricted_tenant_id: str = ""

    # Background jobs
    scheduler_enabled: bool = True
    meeting_sweep_interval_seconds: int = 60
    orphan_sweep_interval_minutes: int = 15

    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.database_url
