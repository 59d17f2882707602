"""Configuration settings for riscv_gcc_build.

Three layers are merged into one immutable RunConfiguration:
defaults < environment variables (RVGCC_ prefix) < CLI flags.

Environment variables are parsed with pydantic-settings; resolution itself
is a pure function of its three inputs and never touches the filesystem.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from riscv_gcc_build.errors import ConfigurationError
from riscv_gcc_build.targets import TargetSpec, native_target, parse_target

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M"
TIMESTAMP_PATTERN = re.compile(r"^\d{8}-\d{4}$")

# Per-target stamps in install/<target>/
STAMP_STARTED = "stamp_started"
STAMP_COMPLETED = "stamp_completed"

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

DEFAULTS: dict[str, Any] = {
    "app_name": "RISC-V Embedded GCC",
    "app_lc_name": "riscv-none-gcc",
    "branding": "GNU MCU Eclipse RISC-V Embedded GCC",
    "gcc_target": "riscv-none-embed",
    "gcc_arch": "rv64imafdc",
    "gcc_abi": "lp64d",
    "release_version": "7.2.0-1-20171109",
    # Attempts to use 8 occasionally failed
    "jobs": 2,
    "skip_docs": False,
    "skip_strip": False,
    "multilib_enabled": True,
    "develop_mode": False,
    "use_gits": False,
    "log_level": "INFO",
}


class Settings(BaseSettings):
    """Environment layer of the configuration.

    Every field is optional; only variables actually present in the
    environment (with the RVGCC_ prefix) take part in resolution.
    """

    model_config = SettingsConfigDict(
        env_prefix="RVGCC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    targets: str | None = Field(
        default=None, description="Comma-separated targets, e.g. linux64,win64"
    )
    work_dir: Path | None = None
    download_dir: Path | None = None
    build_dir: Path | None = None
    deploy_dir: Path | None = None
    jobs: int | None = None
    skip_docs: bool | None = None
    skip_strip: bool | None = None
    multilib_enabled: bool | None = None
    develop_mode: bool | None = None
    use_gits: bool | None = None
    release_version: str | None = None
    build_timestamp: str | None = None
    app_name: str | None = None
    app_lc_name: str | None = None
    branding: str | None = None
    gcc_target: str | None = None
    gcc_arch: str | None = None
    gcc_abi: str | None = None
    sources_file: Path | None = None
    log_level: LogLevel | None = None


class RunConfiguration(BaseModel):
    """Immutable configuration of one orchestrator invocation.

    Attributes:
        targets: Deduplicated targets in platform priority order.
        work_dir: Root of all working folders.
        download_dir: Cache of downloaded source archives.
        build_dir: Root of per-target build folders.
        deploy_dir: Destination of distribution archives.
        jobs: Parallelism hint passed to make.
        skip_docs: Do not build html/pdf manuals.
        skip_strip: Do not strip executables.
        multilib_enabled: Build the multilib variants.
        develop_mode: Developer mode (keeps intermediate trees).
        use_gits: Check sources out from git instead of release archives.
        release_version: Version of the distribution.
        build_timestamp: UTC timestamp identifying the run (YYYYmmdd-HHMM).
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    targets: tuple[TargetSpec, ...] = ()
    work_dir: Path
    download_dir: Path
    build_dir: Path
    deploy_dir: Path
    jobs: int = Field(gt=0)
    skip_docs: bool = False
    skip_strip: bool = False
    multilib_enabled: bool = True
    develop_mode: bool = False
    use_gits: bool = False
    release_version: str = Field(min_length=1)
    build_timestamp: str | None = None
    app_name: str = Field(min_length=1)
    app_lc_name: str = Field(min_length=1)
    branding: str
    gcc_target: str = Field(min_length=1)
    gcc_arch: str
    gcc_abi: str
    sources_file: Path | None = None
    log_level: LogLevel = "INFO"

    @model_validator(mode="before")
    @classmethod
    def derive_paths(cls, data: Any) -> Any:
        """Derive unset folders from the work folder."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("work_dir") is None:
            app_lc_name = data.get("app_lc_name") or DEFAULTS["app_lc_name"]
            data["work_dir"] = Path.home() / "Work" / app_lc_name
        work_dir = Path(data["work_dir"])
        for key, name in (
            ("download_dir", "download"),
            ("build_dir", "build"),
            ("deploy_dir", "deploy"),
        ):
            if data.get(key) is None:
                data[key] = work_dir / name
        return data

    @field_validator("work_dir", "download_dir", "build_dir", "deploy_dir")
    @classmethod
    def make_absolute(cls, v: Path) -> Path:
        """Expand ~ and make paths absolute."""
        return v.expanduser().absolute()

    @field_validator("targets", mode="before")
    @classmethod
    def parse_targets(cls, v: Any) -> tuple[TargetSpec, ...]:
        """Accept target names, comma-separated strings, or TargetSpecs."""
        if v is None:
            v = []
        if isinstance(v, str):
            v = [part for part in v.split(",") if part.strip()]
        specs: set[TargetSpec] = set()
        for item in v:
            specs.add(item if isinstance(item, TargetSpec) else parse_target(item))
        if not specs:
            specs.add(native_target())
        return tuple(sorted(specs, key=lambda t: t.priority))

    @field_validator("build_timestamp")
    @classmethod
    def validate_timestamp(cls, v: str | None) -> str | None:
        """Validate the timestamp format."""
        if v is not None and not TIMESTAMP_PATTERN.match(v):
            raise ValueError(f"build_timestamp must look like YYYYmmdd-HHMM, got '{v}'")
        return v

    @property
    def install_dir(self) -> Path:
        """Root of the per-target install trees."""
        return self.work_dir / "install"

    @property
    def scripts_dir(self) -> Path:
        """Folder receiving copies of the build recipes."""
        return self.work_dir / "scripts"

    def target_build_dir(self, target: TargetSpec) -> Path:
        """Build folder of one target."""
        return self.build_dir / target.slug

    def target_install_dir(self, target: TargetSpec) -> Path:
        """Install folder of one target."""
        return self.install_dir / target.slug

    def app_prefix(self, target: TargetSpec) -> Path:
        """Prefix the toolchain of one target is installed into."""
        return self.target_install_dir(target) / self.app_lc_name


def environment_overrides(settings: Settings | None = None) -> dict[str, Any]:
    """Return the configuration values set through the environment.

    Args:
        settings: Parsed environment; read from os.environ if not provided.

    Returns:
        Mapping of field name to value, without unset fields.

    Raises:
        ConfigurationError: If an environment variable has an invalid value.
    """
    if settings is None:
        try:
            settings = Settings()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid environment: {e}") from e
    return settings.model_dump(exclude_none=True)


def _layer(values: Mapping[str, Any] | None) -> dict[str, Any]:
    return {k: v for k, v in (values or {}).items() if v is not None}


def resolve_run_configuration(
    defaults: Mapping[str, Any] | None = None,
    environment: Mapping[str, Any] | None = None,
    cli_flags: Mapping[str, Any] | None = None,
) -> RunConfiguration:
    """Merge configuration layers into one RunConfiguration.

    Precedence: cli_flags > environment > defaults. ``None`` values mean
    "not given" and never override a lower layer.

    Args:
        defaults: Default values; DEFAULTS if not provided.
        environment: Values from environment variables.
        cli_flags: Values from command-line flags.

    Returns:
        Validated, immutable RunConfiguration.

    Raises:
        ConfigurationError: If any option is invalid.
    """
    merged = _layer(DEFAULTS if defaults is None else defaults)
    merged.update(_layer(environment))
    merged.update(_layer(cli_flags))

    try:
        return RunConfiguration.model_validate(merged)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from e


def find_timestamp_markers(work_dir: Path) -> list[str]:
    """List timestamp marker files left in the work folder by earlier runs."""
    if not work_dir.is_dir():
        return []
    return sorted(
        p.name
        for p in work_dir.iterdir()
        if p.is_file() and TIMESTAMP_PATTERN.match(p.name)
    )


def has_unfinished_targets(config: RunConfiguration) -> bool:
    """Tell whether an earlier run started a target it did not complete."""
    if not config.install_dir.is_dir():
        return False
    return any(
        (d / STAMP_STARTED).is_file() and not (d / STAMP_COMPLETED).is_file()
        for d in config.install_dir.iterdir()
        if d.is_dir()
    )


def pin_build_timestamp(
    config: RunConfiguration,
    now: datetime | None = None,
) -> RunConfiguration:
    """Fix the run timestamp and record it in the work folder.

    An explicit timestamp wins. Otherwise the newest marker is reused when
    an earlier run was interrupted with a target started but not
    completed. A finished pipeline gets a fresh UTC timestamp.

    Args:
        config: Resolved configuration.
        now: Current time (for tests); defaults to UTC now.

    Returns:
        Configuration with ``build_timestamp`` set.
    """
    stamp = config.build_timestamp
    if stamp is None:
        existing = find_timestamp_markers(config.work_dir)
        if existing and has_unfinished_targets(config):
            stamp = existing[-1]
            logger.info("Resuming build with timestamp %s", stamp)
        else:
            stamp = (now or datetime.now(timezone.utc)).strftime(TIMESTAMP_FORMAT)

    config.work_dir.mkdir(parents=True, exist_ok=True)
    (config.work_dir / stamp).touch()
    return config.model_copy(update={"build_timestamp": stamp})


def config_to_dict(config: RunConfiguration) -> dict[str, Any]:
    """Render a configuration as JSON-compatible data."""
    data = config.model_dump(mode="json", exclude={"targets"})
    data["targets"] = [t.slug for t in config.targets]
    return data


def print_config_json(config: RunConfiguration) -> str:
    """Render effective configuration as JSON."""
    return json.dumps(config_to_dict(config), indent=2)


__all__ = [
    "DEFAULTS",
    "STAMP_COMPLETED",
    "STAMP_STARTED",
    "RunConfiguration",
    "Settings",
    "config_to_dict",
    "environment_overrides",
    "find_timestamp_markers",
    "has_unfinished_targets",
    "pin_build_timestamp",
    "print_config_json",
    "resolve_run_configuration",
]
