import os
import sys
from dataclasses import dataclass
from typing import Mapping, Optional

from loguru import logger

from .exceptions import InputError

DEFAULT_DB_PATH = "kidopedia.db"


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    value = env.get(key)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise InputError(f"{key} must be a number, got {value!r}") from None


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    remote_url: Optional[str] = None
    api_key: Optional[str] = None
    remote_timeout: float = 10.0
    lookup_timeout: float = 15.0
    default_age: int = 8
    debug: bool = False

    @property
    def offline(self) -> bool:
        return not self.remote_url

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            db_path=env.get("KIDOPEDIA_DB") or DEFAULT_DB_PATH,
            remote_url=env.get("KIDOPEDIA_REMOTE_URL") or None,
            api_key=env.get("KIDOPEDIA_API_KEY") or None,
            remote_timeout=_float(env, "KIDOPEDIA_REMOTE_TIMEOUT", 10.0),
            lookup_timeout=_float(env, "KIDOPEDIA_LOOKUP_TIMEOUT", 15.0),
            default_age=int(_float(env, "KIDOPEDIA_DEFAULT_AGE", 8)),
            debug=env.get("DEBUG") == "1",
        )


def configure_logging(debug: bool = False) -> None:
    """Replace loguru's default sink with a single stderr sink."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if debug else "INFO")
