"""Read worker profiles from YAML directories."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError
from .models import WorkerProfile

logger = logging.getLogger(__name__)

PROFILE_SUFFIXES = (".yaml", ".yml")


class ProfileLoadError(ConfigurationError):
    """Raised when profile files are unreadable, invalid or conflicting."""


class ProfileLoader:
    """Worker profiles from an ordered list of directories.

    A directory later in the list overrides profile ids defined earlier.
    One directory defining the same id twice is an error.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._search_paths = [Path(p) for p in (search_paths or []) if Path(p).is_dir()]
        self._sources: dict[str, Path] = {}

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def _profile_files(self, directory: Path) -> list[Path]:
        return sorted(
            path
            for path in directory.iterdir()
            if path.suffix in PROFILE_SUFFIXES and path.is_file()
        )

    def _read(self, path: Path) -> WorkerProfile | None:
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ProfileLoadError(f"Cannot read profile {path}: {exc}") from exc
        if document is None:
            logger.debug("Skipping empty profile file", extra={"path": str(path)})
            return None
        if not isinstance(document, dict):
            raise ProfileLoadError(f"Profile {path} must be a mapping")
        try:
            return WorkerProfile.model_validate(document)
        except ValidationError as exc:
            raise ProfileLoadError(f"Invalid profile {path}: {exc}") from exc

    def load_all(self) -> dict[str, WorkerProfile]:
        """Return every profile by id, collecting all file errors into one."""

        profiles: dict[str, WorkerProfile] = {}
        sources: dict[str, Path] = {}
        problems: list[str] = []

        for directory in self._search_paths:
            seen_here: dict[str, Path] = {}
            for path in self._profile_files(directory):
                try:
                    profile = self._read(path)
                except ProfileLoadError as exc:
                    problems.append(str(exc))
                    continue
                if profile is None:
                    continue
                if profile.id in seen_here:
                    problems.append(
                        f"Profile id {profile.id!r} defined in both "
                        f"{seen_here[profile.id].name} and {path.name} under {directory}"
                    )
                    continue
                seen_here[profile.id] = path
                if profile.id in sources:
                    logger.debug(
                        "Profile overridden",
                        extra={"profile": profile.id, "old": str(sources[profile.id]), "new": str(path)},
                    )
                profiles[profile.id] = profile
                sources[profile.id] = path

        if problems:
            raise ProfileLoadError("; ".join(problems))

        self._sources = sources
        logger.debug("Loaded worker profiles", extra={"count": len(profiles)})
        return profiles

    def ids(self) -> list[str]:
        return sorted(self.load_all())

    def source_of(self, profile_id: str) -> Path | None:
        """File the last ``load_all`` took ``profile_id`` from."""

        return self._sources.get(profile_id)

    def get(self, profile_id: str) -> WorkerProfile:
        profiles = self.load_all()
        if profile_id not in profiles:
            known = ", ".join(sorted(profiles)) or "none"
            raise ProfileLoadError(f"Unknown profile {profile_id!r} (available: {known})")
        return profiles[profile_id]


def load_profiles(search_paths: Iterable[Path] | None = None) -> dict[str, WorkerProfile]:
    return ProfileLoader(search_paths).load_all()


__all__ = ["PROFILE_SUFFIXES", "ProfileLoadError", "ProfileLoader", "load_profiles"]
