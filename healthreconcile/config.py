"""Configuration management for healthreconcile.

Centralizes profile-based configuration loading and validation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from healthreconcile.exceptions import ConfigurationError, InvalidInputError
from healthreconcile.sources import PriorityOverrides, parse_source, validate_overrides


DEFAULT_MAX_WORKERS = 4


@dataclass
class ProfileConfig:
    """Profile configuration loaded from YAML file.

    Contains the storage location, the audit history location, and optional
    setting overrides.
    """

    name: str
    storage_path: Path | None = None
    audit_path: Path | None = None
    default_user: str | None = None

    # Processing configuration
    workers: int | None = None

    # Field-level source ranks: [{"field": ..., "source": ..., "rank": ...}]
    priority_overrides: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_file(cls, profile_path: Path) -> "ProfileConfig":
        """Load profile from YAML or JSON file."""
        if not profile_path.exists():
            raise FileNotFoundError(f"Profile not found: {profile_path}")

        content = profile_path.read_text(encoding="utf-8")

        try:
            if profile_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            else:
                data = json.loads(content)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Profile {profile_path} could not be parsed: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Profile {profile_path} must be a mapping")

        def get_path(key: str) -> Path | None:
            val = data.get(key)
            return Path(val) if val else None

        return cls(
            name=data.get("name", profile_path.stem),
            storage_path=get_path("storage_path"),
            audit_path=get_path("audit_path"),
            default_user=data.get("default_user"),
            workers=data.get("workers"),
            priority_overrides=list(data.get("priority_overrides") or []),
        )

    @classmethod
    def list_profiles(cls, profiles_dir: Path = Path("profiles")) -> list[str]:
        """List available profile names (excludes templates starting with _)."""
        if not profiles_dir.exists():
            return []
        profiles = []
        for ext in ("*.yaml", "*.yml", "*.json"):
            for f in profiles_dir.glob(ext):
                if not f.name.startswith("_"):
                    profiles.append(f.stem)
        return sorted(set(profiles))


def build_overrides(entries: list[dict[str, Any]], profile_name: str = "") -> PriorityOverrides:
    """Turn profile override entries into a validated override table."""
    overrides = {}
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Profile '{profile_name}' priority_overrides[{i}] must be a mapping")
        missing = {"field", "source", "rank"} - set(entry)
        if missing:
            raise ConfigurationError(
                f"Profile '{profile_name}' priority_overrides[{i}] missing: {', '.join(sorted(missing))}"
            )
        try:
            source = parse_source(entry["source"])
        except InvalidInputError as e:
            raise ConfigurationError(f"Profile '{profile_name}' priority_overrides[{i}]: {e}") from e
        overrides[(str(entry["field"]), source)] = entry["rank"]

    validate_overrides(overrides)
    return overrides


@dataclass
class Config:
    """Configuration for the reconciliation run.

    All configuration values are loaded from profile YAML files.
    Required fields will raise an error if not set.
    """

    # Path Configuration
    storage_path: Path
    audit_path: Path | None

    default_user: str | None

    # Processing Configuration
    max_workers: int
    priority_overrides: PriorityOverrides

    @classmethod
    def from_profile(cls, profile: ProfileConfig) -> "Config":
        """Load configuration from a profile.

        Args:
            profile: ProfileConfig loaded from YAML/JSON file.

        Returns:
            Config: Validated configuration object.

        Raises:
            ConfigurationError: If required fields are missing or invalid.
        """
        if not profile.storage_path:
            raise ConfigurationError(
                f"Profile '{profile.name}' missing required field: storage_path"
            )

        # Workers with priority: profile > env > default (clamped to CPU count)
        if profile.workers is not None:
            max_workers_raw = profile.workers
        else:
            try:
                max_workers_raw = int(os.getenv("MAX_WORKERS", str(DEFAULT_MAX_WORKERS)))
            except ValueError:
                max_workers_raw = DEFAULT_MAX_WORKERS
        max_cpu = os.cpu_count() or 8
        max_workers = max(1, min(max_workers_raw, max_cpu))

        return cls(
            storage_path=profile.storage_path,
            audit_path=profile.audit_path,
            default_user=profile.default_user,
            max_workers=max_workers,
            priority_overrides=build_overrides(profile.priority_overrides, profile.name),
        )
