"""
Runtime configuration and logging for the Video Rentals API.

Settings are read once from the environment and handed to `create_app`; the
configured logger travels on `app.state` alongside them.
"""

import logging
import os
from typing import List, Mapping, Optional

from pydantic import BaseModel, Field

LOGGER_NAME = "video_rentals"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ConfigError(RuntimeError):
    pass


class Settings(BaseModel):
    secret_key: str = Field(..., min_length=1)
    algorithm: str = "HS256"
    access_token_expire_minutes: int = Field(24 * 60, gt=0)
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "video_rentals"
    log_level: str = "INFO"
    log_file: Optional[str] = "logfile.log"
    cors_origins: List[str] = ["*"]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        secret_key = env.get("SECRET_KEY")
        if not secret_key:
            raise ConfigError("FATAL ERROR: SECRET_KEY is not defined.")
        return cls(
            secret_key=secret_key,
            access_token_expire_minutes=int(env.get("ACCESS_TOKEN_EXPIRE_MINUTES", 24 * 60)),
            database_url=env.get("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=env.get("DATABASE_NAME", "video_rentals"),
            log_level=env.get("LOG_LEVEL", "INFO"),
            # An empty LOG_FILE turns the file sink off
            log_file=env.get("LOG_FILE", "logfile.log") or None,
        )


def configure_logging(settings: Settings) -> logging.Logger:
    """Build the application logger: console always, file when configured.

    Handlers from an earlier call are dropped so building several apps in one
    process (the test suite does) does not stack duplicate sinks.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(settings.log_level.upper())
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if settings.log_file:
        file_handler = logging.FileHandler(settings.log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
