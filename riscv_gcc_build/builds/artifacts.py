"""Distribution archive publishing.

This module handles:
- Gating publication on a completed job and a working compiler driver
- Collecting license files and build logs
- Generating the JSON build manifest
- Writing the .tgz/.zip archive and its .sha checksum sidecar
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tarfile
import tempfile
import zipfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from riscv_gcc_build.builds.executors import Executor
from riscv_gcc_build.builds.runner import CommandError
from riscv_gcc_build.builds.steps import BuildJob
from riscv_gcc_build.builds.toolchain import CONFIGURE_LOG, MAKE_LOG
from riscv_gcc_build.config import RunConfiguration
from riscv_gcc_build.errors import PublishError
from riscv_gcc_build.targets import TargetSpec
from riscv_gcc_build.types import ArtifactInfo, HostOS, JobStatus

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

MANIFEST_NAME = "build-manifest.json"
INFO_FOLDER = "gnu-mcu-eclipse"


@dataclass(frozen=True)
class DistributionArtifact:
    """A published distribution archive.

    Attributes:
        archive_path: Path of the .tgz or .zip archive.
        sha256: Checksum of the archive.
        license_manifest: License files packed into the archive.
        build_log_paths: Build logs packed into the archive.
    """

    archive_path: Path
    sha256: str
    license_manifest: tuple[ArtifactInfo, ...]
    build_log_paths: tuple[Path, ...]

    @property
    def checksum_path(self) -> Path:
        return self.archive_path.with_name(self.archive_path.name + ".sha")


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def archive_name(config: RunConfiguration, target: TargetSpec) -> str:
    """Return the distribution archive file name of a target."""
    extension = "zip" if target.host_os == HostOS.WINDOWS else "tgz"
    return (
        f"{config.app_lc_name}-{config.release_version}-"
        f"{config.build_timestamp}-{target.slug}.{extension}"
    )


def collect_licenses(app_prefix: Path) -> list[ArtifactInfo]:
    """Describe the files below ``<app_prefix>/licenses``.

    Args:
        app_prefix: Installed toolchain folder.

    Returns:
        One ArtifactInfo per license file, labelled with its component.
    """
    licenses_dir = app_prefix / "licenses"
    if not licenses_dir.is_dir():
        logger.warning("No licenses folder in %s", app_prefix)
        return []

    licenses: list[ArtifactInfo] = []
    for path in sorted(licenses_dir.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(app_prefix)
        licenses.append(
            ArtifactInfo(
                filename=path.name,
                relative_path=relative.as_posix(),
                size_bytes=path.stat().st_size,
                sha256=compute_file_hash(path),
                kind="license",
                labels=[relative.parts[1]] if len(relative.parts) > 2 else [],
            )
        )
    return licenses


def collect_build_logs(build_dir: Path) -> list[Path]:
    """Return the configure and make logs of every step of a target."""
    if not build_dir.is_dir():
        return []
    logs: list[Path] = []
    for name in (CONFIGURE_LOG, MAKE_LOG):
        logs.extend(build_dir.glob(f"*/{name}"))
    return sorted(logs)


def generate_manifest(
    config: RunConfiguration,
    target: TargetSpec,
    licenses: list[ArtifactInfo],
    build_logs: list[Path],
    build_dir: Path,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    The manifest contains:
    - Distribution identification (application, version, timestamp)
    - Target and compiler configuration
    - License files with checksums
    - Names of the packed build logs

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "app_name": config.app_name,
        "app_lc_name": config.app_lc_name,
        "branding": config.branding,
        "release_version": config.release_version,
        "build_timestamp": config.build_timestamp,
        "target": target.slug,
        "gcc": {
            "target": config.gcc_target,
            "arch": config.gcc_arch,
            "abi": config.gcc_abi,
            "multilib": config.multilib_enabled,
        },
        "licenses": [asdict(a) for a in licenses],
        "build_logs": [p.relative_to(build_dir).as_posix() for p in build_logs],
    }
    if extra_metadata:
        manifest["metadata"] = extra_metadata
    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


# Executables that must be present and report a version before packaging
CHECKED_TOOLS = ("gcc", "g++", "gdb")


def check_compiler(
    config: RunConfiguration,
    target: TargetSpec,
    executor: Executor,
) -> str:
    """Check the produced compiler, C++ driver and debugger are usable.

    Windows executables cannot run on the build machine, so only their
    presence is checked.

    Returns:
        The gcc version banner, or the gcc driver path for Windows targets.

    Raises:
        PublishError: If a tool is missing or does not run.
    """
    bin_dir = config.app_prefix(target) / "bin"
    suffix = ".exe" if target.host_os == HostOS.WINDOWS else ""
    tools = [bin_dir / f"{config.gcc_target}-{tool}{suffix}" for tool in CHECKED_TOOLS]

    for tool in tools:
        if not tool.is_file():
            raise PublishError(f"Toolchain executable not found: {tool}")

    if target.host_os == HostOS.WINDOWS:
        return str(tools[0])

    banners = []
    for tool in tools:
        try:
            banner = executor.capture([str(tool), "--version"])
        except CommandError as e:
            raise PublishError(
                f"Toolchain executable {tool} does not run: {e}",
                log_path=e.log_path,
            ) from e
        if not banner.strip():
            raise PublishError(f"Toolchain executable {tool} printed no version")
        logger.info("%s", banner.splitlines()[0])
        banners.append(banner)
    return banners[0]


def _write_tgz(
    tmp_path: Path,
    root: str,
    app_prefix: Path,
    logs: list[Path],
    build_dir: Path,
) -> None:
    with tarfile.open(tmp_path, "w:gz") as tar:
        tar.add(app_prefix, arcname=root)
        for log in logs:
            relative = log.relative_to(build_dir).as_posix()
            tar.add(log, arcname=f"{root}/{INFO_FOLDER}/logs/{relative}")


def _write_zip(
    tmp_path: Path,
    root: str,
    app_prefix: Path,
    logs: list[Path],
    build_dir: Path,
) -> None:
    with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(app_prefix.rglob("*")):
            if path.is_file():
                relative = path.relative_to(app_prefix).as_posix()
                zf.write(path, f"{root}/{relative}")
        for log in logs:
            relative = log.relative_to(build_dir).as_posix()
            zf.write(log, f"{root}/{INFO_FOLDER}/logs/{relative}")


def write_archive(
    archive_path: Path,
    root: str,
    app_prefix: Path,
    logs: list[Path],
    build_dir: Path,
) -> Path:
    """Write the archive through a temporary file renamed into place.

    Raises:
        PublishError: If the archive cannot be written.
    """
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=archive_path.parent, prefix=f".{archive_path.name}.", suffix=".tmp"
    )
    os.close(fd)
    tmp_path = Path(tmp_name)
    writer = _write_zip if archive_path.suffix == ".zip" else _write_tgz

    try:
        writer(tmp_path, root, app_prefix, logs, build_dir)
        os.replace(tmp_path, archive_path)
    except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
        tmp_path.unlink(missing_ok=True)
        raise PublishError(f"Failed to write {archive_path}: {e}") from e

    return archive_path


def write_checksum(artifact: DistributionArtifact) -> Path:
    """Write the ``.sha`` sidecar through a temporary file renamed into place.

    Raises:
        PublishError: If the sidecar cannot be written.
    """
    sidecar = artifact.checksum_path
    fd, tmp_name = tempfile.mkstemp(
        dir=sidecar.parent, prefix=f".{sidecar.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{artifact.sha256}  {artifact.archive_path.name}\n")
        os.replace(tmp_name, sidecar)
    except OSError as e:
        Path(tmp_name).unlink(missing_ok=True)
        raise PublishError(f"Failed to write {sidecar}: {e}") from e
    return sidecar


def publish(
    job: BuildJob,
    config: RunConfiguration,
    executor: Executor,
) -> DistributionArtifact:
    """Publish a completed job as a distribution archive.

    Args:
        job: Job that built the target's toolchain.
        config: Run configuration (timestamp must be pinned).
        executor: Back-end used to run the compiler check.

    Returns:
        The published DistributionArtifact.

    Raises:
        PublishError: If the job is not completed, the compiler check
            fails, or the archive cannot be written. Build outputs are
            left in place.
    """
    if job.status != JobStatus.COMPLETED:
        raise PublishError(
            f"Job {job.name} is {job.status.value}; only completed jobs are published",
            code="job_not_completed",
        )
    if job.target is None:
        raise PublishError(f"Job {job.name} has no target", code="no_target")
    if config.build_timestamp is None:
        raise PublishError("Build timestamp is not set", code="no_timestamp")

    target = job.target
    app_prefix = config.app_prefix(target)
    build_dir = config.target_build_dir(target)

    check_compiler(config, target, executor)

    licenses = collect_licenses(app_prefix)
    logs = collect_build_logs(build_dir)
    manifest = generate_manifest(config, target, licenses, logs, build_dir)
    write_manifest(manifest, app_prefix / INFO_FOLDER / MANIFEST_NAME)

    archive_path = config.deploy_dir / archive_name(config, target)
    root = f"{config.app_lc_name}/{config.release_version}-{config.build_timestamp}"
    logger.info("Creating %s", archive_path)
    write_archive(archive_path, root, app_prefix, logs, build_dir)

    sha256 = compute_file_hash(archive_path)
    artifact = DistributionArtifact(
        archive_path=archive_path,
        sha256=sha256,
        license_manifest=tuple(licenses),
        build_log_paths=tuple(logs),
    )
    write_checksum(artifact)

    logger.info("Published %s (sha256: %s)", archive_path.name, sha256[:16] + "...")
    return artifact


__all__ = [
    "CHECKED_TOOLS",
    "HASH_CHUNK_SIZE",
    "DistributionArtifact",
    "archive_name",
    "check_compiler",
    "collect_build_logs",
    "collect_licenses",
    "compute_file_hash",
    "generate_manifest",
    "publish",
    "write_archive",
    "write_checksum",
    "write_manifest",
]
