from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DATA_DIR = Path(__file__).parent / "data"

# Built-in ruleset seed used when no YAML seed file is configured.
DEFAULT_COMPONENTS: list[dict[str, Any]] = [
    {"key": "OTHER", "name": "Other", "description": "Anything not covered by a specific component", "multiplier": 1.0},
]

DEFAULT_SEVERITIES: list[dict[str, Any]] = [
    {"key": "P0", "name": "Critical", "description": "Outage, data loss or security issue", "base_points": 100},
    {"key": "P1", "name": "High", "description": "Major feature broken for many users", "base_points": 50},
    {"key": "P2", "name": "Medium", "description": "Degraded behaviour with a workaround", "base_points": 25},
    {"key": "P3", "name": "Low", "description": "Cosmetic or minor issue", "base_points": 10},
]


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_path(name: str) -> Path | None:
    raw = _env(name)
    return Path(raw).expanduser() if raw else None


class Settings(BaseModel):
    database_path: Path = Field(default_factory=lambda: _env_path("BOUNTYSCORE_DB") or DATA_DIR / "bountyscore.db")

    github_api_url: str = Field(default_factory=lambda: _env("GITHUB_API_URL", "https://api.github.com"))
    github_app_id: str = Field(default_factory=lambda: _env("GITHUB_APP_ID"))
    github_private_key: str = Field(default_factory=lambda: _env("GITHUB_APP_PRIVATE_KEY"))
    github_private_key_path: Path | None = Field(default_factory=lambda: _env_path("GITHUB_APP_PRIVATE_KEY_PATH"))
    github_token: str = Field(default_factory=lambda: _env("GITHUB_TOKEN"))
    webhook_secret: str = Field(default_factory=lambda: _env("GITHUB_WEBHOOK_SECRET"))
    allow_unsigned_webhooks: bool = Field(default_factory=lambda: _env("ALLOW_UNSIGNED_WEBHOOKS") == "1")
    user_agent: str = "bountyscore/0.1"

    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: _env("LLM_MODEL"))

    github_timeout_seconds: float = Field(default_factory=lambda: _env_float("GITHUB_TIMEOUT", 15.0))
    llm_timeout_seconds: float = Field(default_factory=lambda: _env_float("LLM_TIMEOUT", 90.0))
    request_delay_seconds: float = Field(default_factory=lambda: _env_float("REQUEST_DELAY", 0.3))

    sync_page_size: int = 30
    sync_max_pages: int = Field(default_factory=lambda: _env_int("SYNC_MAX_PAGES", 50))
    max_context_files: int = 50
    max_diff_chars: int = 30_000

    ruleset_seed_file: Path | None = Field(default_factory=lambda: _env_path("BOUNTYSCORE_RULESET_SEED"))

    def read_private_key(self) -> str:
        if self.github_private_key:
            # Keys passed through env vars usually have escaped newlines
            return self.github_private_key.replace("\\n", "\n")
        if self.github_private_key_path and self.github_private_key_path.exists():
            return self.github_private_key_path.read_text(encoding="utf-8")
        return ""

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_ruleset_seed(self) -> dict[str, list[dict[str, Any]]]:
        """Components and severities used to seed a new organization.

        The YAML file may define ``components`` and/or ``severities`` lists;
        whatever it leaves out falls back to the built-in defaults. The
        ``OTHER`` component is always present in the result.
        """
        raw = self.load_yaml(self.ruleset_seed_file) if self.ruleset_seed_file else {}
        components = [c for c in raw.get("components") or [] if isinstance(c, dict) and c.get("key")]
        severities = [s for s in raw.get("severities") or [] if isinstance(s, dict) and s.get("key")]
        components = components or [dict(c) for c in DEFAULT_COMPONENTS]
        if not any(str(c["key"]) == "OTHER" for c in components):
            components.append(dict(DEFAULT_COMPONENTS[0]))
        for c in components:
            if str(c["key"]) == "OTHER":
                c["multiplier"] = 1.0
        return {
            "components": components,
            "severities": severities or [dict(s) for s in DEFAULT_SEVERITIES],
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
