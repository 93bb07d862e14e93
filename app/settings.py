from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    registry_path: Path = Field(
        default=Path("data/registry.yaml"), validation_alias="REGISTRY_PATH"
    )
    redis_url: str | None = Field(default=None, validation_alias="REDIS_URL")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    user_agent: str = Field(
        default="emergency-feeds/0.1 (+https://github.com/emergency-feeds)",
        validation_alias="USER_AGENT",
    )

    alerts_ttl_seconds: float = Field(default=60, validation_alias="ALERTS_TTL_SECONDS")
    alerts_stale_while_revalidate_seconds: float = Field(
        default=300, validation_alias="ALERTS_SWR_SECONDS"
    )
    tracks_ttl_seconds: float = Field(default=5, validation_alias="TRACKS_TTL_SECONDS")
    tracks_stale_while_revalidate_seconds: float = Field(
        default=30, validation_alias="TRACKS_SWR_SECONDS"
    )

    max_sources: int = Field(default=50, validation_alias="MAX_SOURCES")
    per_source_timeout_ms: int = Field(
        default=8000, validation_alias="PER_SOURCE_TIMEOUT_MS"
    )
    missing_threshold_seconds: float = Field(
        default=15, validation_alias="MISSING_THRESHOLD_SECONDS"
    )

    adsb_lol_base_url: str = Field(
        default="https://api.adsb.lol", validation_alias="ADSB_LOL_BASE_URL"
    )
    # "lat,lon,dist_nm" triples separated by ";"
    adsb_lol_regions: str = Field(
        default="-33.87,151.21,250;-37.81,144.96,250;-27.47,153.03,250",
        validation_alias="ADSB_LOL_REGIONS",
    )
    adsb_lol_timeout_ms: int = Field(default=6000, validation_alias="ADSB_LOL_TIMEOUT_MS")

    opensky_base_url: str = Field(
        default="https://opensky-network.org/api", validation_alias="OPENSKY_BASE_URL"
    )
    opensky_client_id: str | None = Field(
        default=None, validation_alias="OPENSKY_CLIENT_ID"
    )
    opensky_client_secret: str | None = Field(
        default=None, validation_alias="OPENSKY_CLIENT_SECRET"
    )
