"""
Configuration and logging setup.

Settings come from the process environment, optionally seeded from a .env
file through python-dotenv.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

from dotenv import load_dotenv

from .errors import ConfigError, InvalidInputError
from .validation import validate_url

ENV_PREFIX = "SEGMENT_ENVELOPE_"
ENVELOPE_FORMATS = ("compact", "manifest")


@dataclass(frozen=True)
class SegmentEnvelopeConfig:
    """Settings for building providers and encryptors."""

    kas_url: str
    cdn_base_url: str
    envelope_format: str = "compact"
    max_concurrency: int = 8
    unwrap_timeout: float = 10.0
    segment_extension: str = "ts"
    mime_type: str = "video/mp2t"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        try:
            validate_url(self.kas_url)
            validate_url(self.cdn_base_url, schemes=("http", "https"))
        except InvalidInputError as e:
            raise ConfigError(str(e)) from e
        if self.envelope_format not in ENVELOPE_FORMATS:
            raise ConfigError(
                f"Invalid envelope format: {self.envelope_format} (expected one of {', '.join(ENVELOPE_FORMATS)})"
            )
        if self.max_concurrency < 1:
            raise ConfigError(f"max_concurrency must be at least 1, got {self.max_concurrency}")
        if self.unwrap_timeout <= 0:
            raise ConfigError(f"unwrap_timeout must be positive, got {self.unwrap_timeout}")
        if not self.segment_extension or "/" in self.segment_extension:
            raise ConfigError(f"Invalid segment extension: {self.segment_extension!r}")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigError(f"Invalid log level: {self.log_level}")

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> SegmentEnvelopeConfig:
        """
        Load settings from the environment.

        Args:
            env_file: Optional .env file loaded first (existing variables win)
            environ: Mapping to read instead of os.environ

        Raises:
            ConfigError: If a required setting is missing or a value is invalid
        """
        if environ is None:
            load_dotenv(env_file)
            environ = os.environ

        def get(name: str) -> Optional[str]:
            value = environ.get(ENV_PREFIX + name)
            return value.strip() if value is not None and value.strip() else None

        kas_url = get("KAS_URL")
        cdn_base_url = get("CDN_BASE_URL")
        if kas_url is None or cdn_base_url is None:
            raise ConfigError(
                f"{ENV_PREFIX}KAS_URL and {ENV_PREFIX}CDN_BASE_URL must be set in environment or .env file"
            )

        overrides = {}
        try:
            if get("FORMAT") is not None:
                overrides["envelope_format"] = get("FORMAT").lower()
            if get("MAX_CONCURRENCY") is not None:
                overrides["max_concurrency"] = int(get("MAX_CONCURRENCY"))
            if get("UNWRAP_TIMEOUT") is not None:
                overrides["unwrap_timeout"] = float(get("UNWRAP_TIMEOUT"))
        except ValueError as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from e
        for name, attr in (
            ("SEGMENT_EXTENSION", "segment_extension"),
            ("MIME_TYPE", "mime_type"),
            ("LOG_LEVEL", "log_level"),
        ):
            if get(name) is not None:
                overrides[attr] = get(name)

        return cls(kas_url=kas_url, cdn_base_url=cdn_base_url, **overrides)


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    # Configure root logger once; keep output simple for terminals.
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
    )
