from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _resolve_home() -> Path:
    override = os.getenv("EPICSCORE_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _resolve_database_path() -> Path:
    override = os.getenv("EPICSCORE_DB", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return _resolve_home() / "data" / "epicscore.db"


DEFAULT_ROLES: list[tuple[str, str]] = [
    ("IT lead", "Team IT lead"),
    ("Analyst", "Business/system analyst"),
    ("Backend developer", "Backend developer"),
    ("Frontend developer", "Frontend developer"),
    ("Mobile developer", "Mobile developer"),
    ("QA engineer", "Quality assurance engineer"),
]


class Settings(BaseModel):
    data_dir: Path = Field(default_factory=lambda: _resolve_home() / "data")
    database_path: Path = Field(default_factory=_resolve_database_path)

    session_ttl_seconds: float = 300.0
    token_max_bytes: int = 64

    effort_min: int = 0
    effort_max: int = 500

    admins: list[str] = Field(default_factory=list)
    super_admins: list[str] = Field(default_factory=list)

    default_roles: list[tuple[str, str]] = Field(default_factory=lambda: list(DEFAULT_ROLES))

    host: str = "127.0.0.1"
    port: int = 8002

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    def access_policy(self) -> AccessPolicy:
        return AccessPolicy(admins=frozenset(self.admins), super_admins=frozenset(self.super_admins))


class AccessPolicy(BaseModel):
    """Who may run administrative flows.

    Handles compare case-insensitively and without a leading ``@``.
    Super administrators are implicitly administrators.
    """

    model_config = {"frozen": True}

    admins: frozenset[str] = frozenset()
    super_admins: frozenset[str] = frozenset()

    @staticmethod
    def _norm(handle: str) -> str:
        return handle.strip().lstrip("@").casefold()

    def is_super_admin(self, handle: str | None) -> bool:
        if not handle:
            return False
        return self._norm(handle) in {self._norm(h) for h in self.super_admins}

    def is_admin(self, handle: str | None) -> bool:
        if not handle:
            return False
        if self.is_super_admin(handle):
            return True
        return self._norm(handle) in {self._norm(h) for h in self.admins}

    def with_admin(self, handle: str) -> AccessPolicy:
        """A copy of this policy with *handle* added to the administrators."""
        return self.model_copy(update={"admins": self.admins | {self._norm(handle)}})

    def without_admin(self, handle: str) -> AccessPolicy:
        """A copy of this policy with *handle* removed from the administrators."""
        key = self._norm(handle)
        return self.model_copy(update={"admins": frozenset(h for h in self.admins if self._norm(h) != key)})


def load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


def config_path() -> Path:
    override = os.getenv("EPICSCORE_CONFIG", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return _resolve_home() / "config.yml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings(**load_yaml(config_path()))
    settings.ensure_directories()
    return settings
