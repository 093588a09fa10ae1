"""
Configuration - environment backed settings
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def collect_youtube_api_keys(environ: dict[str, str] | None = None) -> list[str]:
    """Merge YOUTUBE_API_KEYS, YOUTUBE_API_KEY and YOUTUBE_API_KEY_* into one de-duplicated list."""
    env = os.environ if environ is None else environ
    raw: list[str] = []
    for name in ("YOUTUBE_API_KEYS", "YOUTUBE_API_KEY"):
        if env.get(name):
            raw.extend(env[name].split(","))
    for name in sorted(env):
        if name.startswith("YOUTUBE_API_KEY_") and env[name]:
            raw.extend(env[name].split(","))

    keys: list[str] = []
    for key in raw:
        key = key.strip()
        if key and key not in keys:
            keys.append(key)
    return keys


class Config:
    """Bot configuration loaded from the environment."""

    def __init__(self):
        self.DISCORD_TOKEN: str | None = os.getenv("DISCORD_TOKEN")
        guild_id = os.getenv("DISCORD_GUILD_ID")
        self.DISCORD_GUILD_ID: int | None = int(guild_id) if guild_id and guild_id.isdigit() else None

        self.DATABASE_PATH = Path(os.getenv("DATABASE_PATH", "data/sonora.db"))
        self.LOG_PATH = Path(os.getenv("LOG_PATH", "data/bot.log"))

        self.YOUTUBE_API_KEYS = collect_youtube_api_keys()
        self.YTDL_COOKIES_PATH: str | None = os.getenv("YTDL_COOKIES_PATH") or None
        self.YTDL_PO_TOKEN: str | None = os.getenv("YTDL_PO_TOKEN") or None

        self.YTDLP_PATH: str | None = os.getenv("YTDLP_PATH") or os.getenv("YTDLP_BIN") or None
        self.YTDLP_AUTO_DOWNLOAD = _env_bool("YTDLP_AUTO_DOWNLOAD", True)

        self.IDLE_DISCONNECT_SECONDS = _env_int("IDLE_DISCONNECT_SECONDS", 300)
        self.SEARCH_RESULTS = max(1, min(_env_int("SEARCH_RESULTS", 5), 10))


config = Config()
