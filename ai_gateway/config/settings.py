import os
from dataclasses import dataclass
from typing import Optional

from ai_gateway.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class Settings:
    """Process-level settings read from the environment."""
    db_path: str = DEFAULT_DB_PATH
    # redis://host:port/db; the in-process cache is used when unset
    redis_url: Optional[str] = None
    # YAML policy file, built-in defaults when unset
    config_path: Optional[str] = None
    log_level: str = "info"
    openai_api_key: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.environ.get("AI_GATEWAY_DB_PATH", DEFAULT_DB_PATH),
            redis_url=os.environ.get("AI_GATEWAY_REDIS_URL") or None,
            config_path=os.environ.get("AI_GATEWAY_CONFIG") or None,
            log_level=os.environ.get("AI_GATEWAY_LOG_LEVEL", "info"),
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
        )

    @property
    def openai_enabled(self) -> bool:
        return bool(self.openai_api_key)
