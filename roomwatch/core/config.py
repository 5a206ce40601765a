import logging
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ROOMWATCH_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    project_name: str = "Roomwatch Scheduling API"
    api_prefix: str = "/api"

    # IANA zone used to turn the wall clock into a weekday + minute-of-day.
    facility_timezone: str = "UTC"

    # Bounds of the bookable day used when searching for free slots.
    day_start_minute: int = 0
    day_end_minute: int = 24 * 60

    default_candidate_cap: int = 10

    # When set, sessions/rooms/conflicts are persisted to this JSON file.
    data_file: Path | None = None
    seed_demo_data: bool = True

    log_level: str = "INFO"

    @field_validator("facility_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"unknown time zone {value!r}") from exc
        return value

    @model_validator(mode="after")
    def _day_window(self) -> "Settings":
        if not 0 <= self.day_start_minute < self.day_end_minute <= 24 * 60:
            raise ValueError("day_start_minute must be before day_end_minute within one day")
        if self.default_candidate_cap < 1:
            raise ValueError("default_candidate_cap must be at least 1")
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.facility_timezone)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
