import os
from dataclasses import dataclass, field

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_API_VERSION = "2023-06-01"


@dataclass
class Config:
    # listen_address: format ":3000" or
    # "127.0.0.1:3000"
    listen_address: "str" = "127.0.0.1:3000"
    log_level: "str" = "info"
    db_path: "str" = "usage.db"

    # never shown in repr so it cannot leak into logs
    anthropic_api_key: "str" = field(default="", repr=False)
    anthropic_base_url: "str" = DEFAULT_BASE_URL
    anthropic_version: "str" = DEFAULT_API_VERSION
    # seconds to wait on the upstream provider
    upstream_timeout: "float" = 600.0

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            db_path=os.environ.get("TOKENRELAY_DB_PATH", "usage.db"),
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
            anthropic_base_url=os.environ.get("ANTHROPIC_BASE_URL", DEFAULT_BASE_URL),
            anthropic_version=os.environ.get("ANTHROPIC_VERSION", DEFAULT_API_VERSION),
            upstream_timeout=float(os.environ.get("TOKENRELAY_UPSTREAM_TIMEOUT", "600")),
        )

    @property
    def key_loaded(self) -> "bool":
        return bool(self.anthropic_api_key)
