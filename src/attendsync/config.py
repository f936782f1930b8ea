from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./attendsync.db"
    session_inactivity_hours: int = 24
    session_sweep_minutes: int = 15
    default_geofence_radius_m: float = 100.0
    location_accuracy_threshold_m: float = 500.0
    max_future_skew_seconds: int = 300
    max_past_skew_seconds: int = 300
    require_location_override: bool = False  # strict clock-out policy
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
