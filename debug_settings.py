"""
Runtime settings for the rule debugger.

Values come from the environment (a local .env file is loaded first), so a
developer can tune timeouts or turn on the browser fallback without touching
the source definitions being debugged.
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        logger.warning(f"[Settings] Ignoring {name}={raw!r}, using {default}")
        return default


@dataclass(frozen=True)
class DebugSettings:
    """Tunables shared by the fetch client, sandbox and stage runners."""
    request_timeout: float = 30.0
    max_redirects: int = 5
    script_timeout: float = 5.0
    item_limit: int = 20
    use_webview: bool = False
    proxy: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "DebugSettings":
        return cls(
            request_timeout=_env_number("RULE_DEBUG_TIMEOUT", 30.0, float),
            max_redirects=_env_number("RULE_DEBUG_MAX_REDIRECTS", 5, int),
            script_timeout=_env_number("RULE_DEBUG_SCRIPT_TIMEOUT", 5.0, float),
            item_limit=_env_number("RULE_DEBUG_ITEM_LIMIT", 20, int),
            use_webview=_env_bool("RULE_DEBUG_WEBVIEW"),
            proxy=os.getenv("PROXY_URL") or None,
            log_level=os.getenv("RULE_DEBUG_LOG_LEVEL", "INFO").upper(),
        )
