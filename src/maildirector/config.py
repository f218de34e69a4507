"""Summary: Application configuration for MailDirector.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for storage, registry, and schedulers.

    Importance: Ensures all services derive settings from a single source of truth.
    Alternatives: Store settings in a shared config file and parse at startup.
    """

    data_dir: str
    storage_secret: str
    registry_ttl_minutes: int
    registry_max_entries: int
    registry_sweep_seconds: int
    max_conversations: int
    max_file_size_mb: int
    log_max_entries: int
    log_ttl_days: int
    fetcher_interval_minutes: float
    fetcher_max_messages: int
    fetcher_bootstrap_concurrency: int
    orchestration_max_turns: int
    mock_mail_fixture: str
    google_token_url: str
    microsoft_token_url: str
    google_client_id: str
    google_client_secret: str
    microsoft_client_id: str
    microsoft_client_secret: str
    api_host: str
    api_port: int

    @property
    def users_dir(self) -> Path:
        """Return the directory that holds every tenant root."""

        return Path(self.data_dir) / "users"

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AppConfig.from_mapping(defaults, os.environ)

    @staticmethod
    def from_mapping(defaults: Mapping[str, str], env: Mapping[str, str]) -> "AppConfig":
        """Summary: Build configuration from a defaults mapping and overrides.

        Importance: Lets tests construct configs without touching the process environment.
        Alternatives: Require every caller to go through from_env.
        """

        def pick(key: str) -> str:
            return env.get(f"MAILDIRECTOR_{key.upper()}", defaults[key])

        return AppConfig(
            data_dir=pick("data_dir"),
            storage_secret=pick("storage_secret"),
            registry_ttl_minutes=int(pick("registry_ttl_minutes")),
            registry_max_entries=int(pick("registry_max_entries")),
            registry_sweep_seconds=int(pick("registry_sweep_seconds")),
            max_conversations=int(pick("max_conversations")),
            max_file_size_mb=int(pick("max_file_size_mb")),
            log_max_entries=int(pick("log_max_entries")),
            log_ttl_days=int(pick("log_ttl_days")),
            fetcher_interval_minutes=float(pick("fetcher_interval_minutes")),
            fetcher_max_messages=int(pick("fetcher_max_messages")),
            fetcher_bootstrap_concurrency=int(pick("fetcher_bootstrap_concurrency")),
            orchestration_max_turns=int(pick("orchestration_max_turns")),
            mock_mail_fixture=pick("mock_mail_fixture"),
            google_token_url=pick("google_token_url"),
            microsoft_token_url=pick("microsoft_token_url"),
            google_client_id=env.get("GOOGLE_CLIENT_ID", defaults["google_client_id"]),
            google_client_secret=env.get("GOOGLE_CLIENT_SECRET", defaults["google_client_secret"]),
            microsoft_client_id=env.get("MICROSOFT_CLIENT_ID", defaults["microsoft_client_id"]),
            microsoft_client_secret=env.get(
                "MICROSOFT_CLIENT_SECRET", defaults["microsoft_client_secret"]
            ),
            api_host=pick("api_host"),
            api_port=int(pick("api_port")),
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
