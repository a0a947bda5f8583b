"""Summary: Application configuration for CareBridge.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for storage, auth, billing, and the lifecycle engine.

    Importance: Ensures all services derive settings from a single source of truth.
    Alternatives: Store settings in a shared config file and parse at startup.
    """

    db_path: str
    api_host: str
    api_port: int
    token_secret: str
    billing_webhook_secret: str
    free_response_limit: int = 3
    allow_duplicate_requests: bool = True
    append_retries: int = 3

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AppConfig(
            db_path=os.getenv("CAREBRIDGE_DB_PATH", defaults["db_path"]),
            api_host=os.getenv("CAREBRIDGE_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("CAREBRIDGE_API_PORT", defaults["api_port"])),
            token_secret=os.getenv("CAREBRIDGE_TOKEN_SECRET", defaults["token_secret"]),
            billing_webhook_secret=os.getenv(
                "CAREBRIDGE_BILLING_WEBHOOK_SECRET", defaults["billing_webhook_secret"]
            ),
            free_response_limit=int(
                os.getenv("CAREBRIDGE_FREE_RESPONSE_LIMIT", defaults["free_response_limit"])
            ),
            allow_duplicate_requests=_parse_bool(
                os.getenv(
                    "CAREBRIDGE_ALLOW_DUPLICATE_REQUESTS", defaults["allow_duplicate_requests"]
                )
            ),
            append_retries=int(
                os.getenv("CAREBRIDGE_APPEND_RETRIES", defaults["append_retries"])
            ),
        )


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: Ensures all variables exist in a single config file.
    Alternatives: Inline defaults in the AppConfig initializer.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Keeps secrets out of code while supporting local workflows.
    Alternatives: Use python-dotenv or OS-specific secret stores.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}
