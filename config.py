import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

METADATA_SOURCES = ("ytdlp", "official")


class ConfigurationError(Exception):
    """Raised when the environment is missing or has invalid settings"""


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass
class Settings:
    metadata_source: str = "ytdlp"
    youtube_api_key: Optional[str] = None
    yt_dlp_path: str = "yt-dlp"
    cookies_file: Optional[Path] = None
    proxy: Optional[str] = None
    request_timeout: int = 30
    chunk_size: int = 1024 * 1024
    log_file: Optional[str] = "ytfetch.log"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from process environment"""
        source = os.getenv("METADATA_SOURCE", "ytdlp").strip().lower()
        if source not in METADATA_SOURCES:
            raise ConfigurationError(
                f"METADATA_SOURCE must be one of {', '.join(METADATA_SOURCES)}, got '{source}'"
            )

        cookies = os.getenv("COOKIES_FILE")
        return cls(
            metadata_source=source,
            youtube_api_key=os.getenv("YOUTUBE_API_KEY") or None,
            yt_dlp_path=os.getenv("YT_DLP_PATH", "yt-dlp"),
            cookies_file=Path(cookies) if cookies else None,
            proxy=os.getenv("PROXY") or None,
            request_timeout=_int_env("REQUEST_TIMEOUT", 30),
            chunk_size=_int_env("DOWNLOAD_CHUNK_SIZE", 1024 * 1024),
            log_file=os.getenv("LOG_FILE", "ytfetch.log") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def require_api_key(self) -> str:
        """Return the YouTube Data API key or fail fast when it is not set"""
        if not self.youtube_api_key:
            raise ConfigurationError(
                "YOUTUBE_API_KEY environment variable is not set; "
                "it is required when METADATA_SOURCE=official"
            )
        return self.youtube_api_key
