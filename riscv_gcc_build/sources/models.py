"""Upstream source packages and their overrides.

Each upstream component is described by a SourcePackage: where its release
archive (or git branch) lives and which folder it unpacks to. Versions and
URLs can be overridden per component from a YAML sources file, validated
with Pydantic before use.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from riscv_gcc_build.errors import ConfigurationError

GITHUB_ORG_URL = "https://github.com/gnu-mcu-eclipse"

# Components whose releases follow the distribution version
PROJECT_COMPONENTS: dict[str, str] = {
    "binutils": "riscv-binutils-gdb",
    "gcc": "riscv-none-gcc",
    "newlib": "riscv-newlib",
}

GIT_DEFAULTS: dict[str, tuple[str, str]] = {
    "binutils": (
        "riscv-binutils-2.29-gme",
        # June 17, 2017
        "1687da01bdcb15f6804787d4c9b2d1a5d92f7b1a",
    ),
    "gcc": (
        "riscv-gcc-7.2.0-gme",
        "ab6b9b49de587375797fc0a587bc1d42d270584f",
    ),
    "newlib": (
        "riscv-newlib-2.5.0-gme",
        "5b38d671e29e125b5c98c0e310714d8b64117ec7",
    ),
}

LIBRARY_DEFAULTS: dict[str, tuple[str, str]] = {
    "gmp": ("6.1.2", "https://gmplib.org/download/gmp/gmp-{v}.tar.bz2"),
    "mpfr": ("3.1.6", "https://www.mpfr.org/mpfr-{v}/mpfr-{v}.tar.bz2"),
    "mpc": ("1.0.3", "https://ftp.gnu.org/gnu/mpc/mpc-{v}.tar.gz"),
    "isl": ("0.18", "https://gcc.gnu.org/pub/gcc/infrastructure/isl-{v}.tar.bz2"),
    "expat": (
        "2.2.5",
        "https://github.com/libexpat/libexpat/releases/download/{tag}/expat-{v}.tar.bz2",
    ),
}

COMPONENT_ORDER = ["binutils", "gcc", "newlib", "gmp", "mpfr", "mpc", "isl", "expat"]


class SourcePackage(BaseModel):
    """One upstream component.

    Attributes:
        name: Component identifier (binutils, gcc, newlib, gmp, ...).
        version: Component version.
        folder_name: Folder the sources live in, below the work folder.
        archive_url: Release archive URL (archive mode).
        archive_name: File name of the archive in the download cache.
        sha256: Optional expected archive checksum.
        git_url: Repository URL (git mode).
        git_branch: Branch to clone.
        git_commit: Commit to check out after cloning.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    version: str = Field(min_length=1)
    folder_name: str = Field(min_length=1)
    archive_url: str | None = None
    archive_name: str | None = None
    sha256: str | None = None
    git_url: str | None = None
    git_branch: str | None = None
    git_commit: str | None = None

    @property
    def is_git(self) -> bool:
        """Whether the sources come from a git checkout."""
        return bool(self.git_url)


class SourceOverrideSchema(BaseModel):
    """Per-component overrides accepted in a sources file."""

    model_config = ConfigDict(extra="forbid")

    version: str | None = None
    folder_name: str | None = None
    archive_url: str | None = None
    archive_name: str | None = None
    sha256: str | None = None
    git_url: str | None = None
    git_branch: str | None = None
    git_commit: str | None = None

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: str | None) -> str | None:
        """Validate the checksum is a SHA-256 hex digest."""
        if v is None:
            return v
        if len(v) != 64 or any(c not in "0123456789abcdefABCDEF" for c in v):
            raise ValueError("sha256 must be a 64 character hex digest")
        return v.lower()


class SourcesFileSchema(BaseModel):
    """Schema of a YAML sources file.

    Example::

        packages:
          gmp:
            version: 6.1.1
          gcc:
            git_url: https://github.com/example/riscv-gcc.git
            git_branch: develop
    """

    model_config = ConfigDict(extra="forbid")

    packages: dict[str, SourceOverrideSchema] = Field(default_factory=dict)

    @field_validator("packages")
    @classmethod
    def validate_names(
        cls, v: dict[str, SourceOverrideSchema]
    ) -> dict[str, SourceOverrideSchema]:
        """Reject unknown component names."""
        unknown = sorted(set(v) - set(COMPONENT_ORDER))
        if unknown:
            raise ValueError(f"unknown components: {', '.join(unknown)}")
        return v


def _project_package(
    name: str,
    release_version: str,
    use_gits: bool,
    override: SourceOverrideSchema,
) -> SourcePackage:
    project = PROJECT_COMPONENTS[name]
    version = override.version or release_version

    if use_gits or override.git_url:
        branch, commit = GIT_DEFAULTS[name]
        return SourcePackage(
            name=name,
            version=version,
            folder_name=override.folder_name or f"{project}.git",
            git_url=override.git_url or f"{GITHUB_ORG_URL}/{project}.git",
            git_branch=override.git_branch or branch,
            git_commit=override.git_commit or (None if override.git_url else commit),
        )

    folder_name = override.folder_name or f"{project}-{version}"
    return SourcePackage(
        name=name,
        version=version,
        folder_name=folder_name,
        archive_url=override.archive_url
        or f"{GITHUB_ORG_URL}/{project}/archive/v{version}.tar.gz",
        archive_name=override.archive_name or f"{folder_name}.tar.gz",
        sha256=override.sha256,
    )


def _library_package(name: str, override: SourceOverrideSchema) -> SourcePackage:
    default_version, url_template = LIBRARY_DEFAULTS[name]
    version = override.version or default_version
    tag = "R_" + version.replace(".", "_")
    url = override.archive_url or url_template.format(v=version, tag=tag)
    archive_name = override.archive_name or url.rsplit("/", 1)[-1]
    return SourcePackage(
        name=name,
        version=version,
        folder_name=override.folder_name or f"{name}-{version}",
        archive_url=url,
        archive_name=archive_name,
        sha256=override.sha256,
        git_url=override.git_url,
        git_branch=override.git_branch,
        git_commit=override.git_commit,
    )


def default_packages(
    release_version: str,
    use_gits: bool = False,
    overrides: SourcesFileSchema | None = None,
) -> dict[str, SourcePackage]:
    """Return the source packages of a distribution release.

    Args:
        release_version: Distribution version; binutils, gcc and newlib
            release tags follow it.
        use_gits: Check binutils, gcc and newlib out from git.
        overrides: Optional per-component overrides.

    Returns:
        Mapping of component name to SourcePackage, in build order.
    """
    per_name = overrides.packages if overrides else {}
    packages: dict[str, SourcePackage] = {}
    for name in COMPONENT_ORDER:
        override = per_name.get(name) or SourceOverrideSchema()
        if name in PROJECT_COMPONENTS:
            packages[name] = _project_package(name, release_version, use_gits, override)
        else:
            packages[name] = _library_package(name, override)
    return packages


def load_sources_file(path: Path) -> SourcesFileSchema:
    """Load and validate a YAML sources file.

    Args:
        path: Path to the YAML file.

    Returns:
        Validated SourcesFileSchema.

    Raises:
        ConfigurationError: If the file is missing, not YAML, or invalid.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data: Any = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Sources file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Sources file {path} is not valid YAML: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Expected a YAML mapping in {path}, got {type(data).__name__}"
        )

    try:
        return SourcesFileSchema.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid sources file {path}: {e}") from e


__all__ = [
    "COMPONENT_ORDER",
    "SourceOverrideSchema",
    "SourcePackage",
    "SourcesFileSchema",
    "default_packages",
    "load_sources_file",
]
