"""Runtime configuration and logging setup."""

import logging
import os
from typing import Literal

import pydantic

ENV_PREFIX = "ENCMATCH_"

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class MatchSettings(pydantic.BaseModel):
    database_url: str = "sqlite://"     # in-memory, lost on exit
    echo_sql: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    service_name: str = "encmatch"     # logger suffix of the service instance
    max_event_history: int = pydantic.Field(default=1000, ge=1)

    @pydantic.field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value):
        return value.upper() if isinstance(value, str) else value

    @classmethod
    def from_env(cls, environ=None) -> "MatchSettings":
        """build settings from ENCMATCH_* variables, falling back to defaults"""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in environ:
                values[name] = environ[key]
        return cls(**values)


def configure_logging(settings: MatchSettings) -> None:
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
