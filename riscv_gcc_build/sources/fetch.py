"""Source fetch module.

This module handles:
- Download of release archives with optional checksum verification
- Safe extraction into the work folder
- Git checkouts of development branches
- Idempotent preparation of every source package
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tarfile
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import httpx

from riscv_gcc_build.builds.runner import run_command
from riscv_gcc_build.config import RunConfiguration
from riscv_gcc_build.sources.models import SourcePackage

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

ARCHIVE_MODES = {
    ".tar.gz": "r:gz",
    ".tgz": "r:gz",
    ".tar.bz2": "r:bz2",
    ".tar.xz": "r:xz",
    ".tar": "r:",
}


class DownloadError(Exception):
    """Raised when a source download fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        """Initialize DownloadError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class VerificationError(Exception):
    """Raised when checksum verification fails."""

    def __init__(self, message: str, code: str = "verification_error") -> None:
        """Initialize VerificationError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class ExtractionError(Exception):
    """Raised when archive extraction fails."""

    def __init__(self, message: str, code: str = "extraction_error") -> None:
        """Initialize ExtractionError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


@dataclass
class DownloadResult:
    """Result of an archive download."""

    archive_path: Path
    checksum: str
    size_bytes: int


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    The file is streamed into a temporary file next to ``dest_path`` and
    moved into place only when complete.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadError: If download fails.
        VerificationError: If checksum verification fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        dir=dest_path.parent, suffix=".tmp", delete=False
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            with tmp_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

        computed_checksum = sha256.hexdigest()

        if expected_checksum and computed_checksum != expected_checksum.lower():
            raise VerificationError(
                f"Checksum mismatch for {url}: "
                f"expected {expected_checksum}, got {computed_checksum}"
            )

        shutil.move(str(tmp_path), str(dest_path))

    except httpx.HTTPStatusError as e:
        tmp_path.unlink(missing_ok=True)
        raise DownloadError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        tmp_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Timeout downloading {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        tmp_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        computed_checksum[:16] + "...",
    )

    return DownloadResult(
        archive_path=dest_path,
        checksum=computed_checksum,
        size_bytes=total_bytes,
    )


def _archive_mode(archive_path: Path) -> str:
    name = archive_path.name.lower()
    for suffix, mode in ARCHIVE_MODES.items():
        if name.endswith(suffix):
            return mode
    raise ExtractionError(
        f"Unsupported archive format: {archive_path.name}",
        code="unsupported_format",
    )


def extract_archive(archive_path: Path, dest_dir: Path, folder_name: str) -> Path:
    """Extract a source archive into ``dest_dir/folder_name``.

    Extraction happens in a temporary folder; the top-level folder is
    renamed into place only when complete, so an interrupted extraction
    never looks finished.

    Args:
        archive_path: Path to the archive file.
        dest_dir: Folder receiving the sources.
        folder_name: Expected name of the extracted folder.

    Returns:
        Path to the extracted source folder.

    Raises:
        ExtractionError: If extraction fails.
    """
    logger.info("Unpacking %s", archive_path.name)
    dest_dir.mkdir(parents=True, exist_ok=True)
    mode = _archive_mode(archive_path)
    final_dir = dest_dir / folder_name
    staging = Path(tempfile.mkdtemp(dir=dest_dir, prefix=f".{folder_name}."))

    try:
        with tarfile.open(archive_path, mode) as tar:  # type: ignore[call-overload]
            members = tar.getmembers()
            if not members:
                raise ExtractionError(
                    f"Archive {archive_path} is empty",
                    code="empty_archive",
                )

            for member in members:
                # Security: prevent path traversal
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ExtractionError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )

            tar.extractall(staging, filter="data")

        entries = list(staging.iterdir())
        if len(entries) == 1 and entries[0].is_dir():
            entries[0].rename(final_dir)
        else:
            staging.rename(final_dir)

    except tarfile.TarError as e:
        raise ExtractionError(
            f"Failed to extract {archive_path}: {e}",
            code="tar_error",
        ) from e
    except OSError as e:
        raise ExtractionError(
            f"OS error extracting {archive_path}: {e}",
            code="os_error",
        ) from e
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)

    logger.info("Extracted sources to %s", final_dir)
    return final_dir


def git_checkout(package: SourcePackage, work_dir: Path, log_path: Path) -> Path:
    """Clone a package's git branch and check out its pinned commit.

    The clone is made in a temporary folder next to the final one and
    renamed into place after the checkout, so a failed or interrupted
    clone is retried on the next run.

    Args:
        package: Package with a git URL.
        work_dir: Folder receiving the checkout.
        log_path: Log file for git output.

    Returns:
        Path to the checkout.

    Raises:
        CommandError: If git fails.
    """
    work_dir.mkdir(parents=True, exist_ok=True)
    dest = work_dir / package.folder_name
    staging = Path(tempfile.mkdtemp(dir=work_dir, prefix=f".{package.folder_name}."))

    try:
        cmd = ["git", "clone"]
        if package.git_branch:
            cmd.append(f"--branch={package.git_branch}")
        cmd.extend([str(package.git_url), package.folder_name])
        run_command(cmd, cwd=staging, log_path=log_path)

        checkout = staging / package.folder_name
        if package.git_commit:
            run_command(
                ["git", "checkout", "-qf", package.git_commit],
                cwd=checkout,
                log_path=log_path,
            )
        checkout.rename(dest)
    finally:
        shutil.rmtree(staging, ignore_errors=True)

    logger.info("Checked out %s to %s", package.name, dest)
    return dest


def fetch_package(
    client: httpx.Client,
    package: SourcePackage,
    work_dir: Path,
    download_dir: Path,
    log_path: Path,
) -> Path:
    """Make a package's sources available in the work folder.

    An existing source folder skips the package; a cached archive skips
    the download.

    Returns:
        Path to the source folder.
    """
    source_dir = work_dir / package.folder_name
    if source_dir.is_dir():
        logger.debug("Sources already present: %s", source_dir)
        return source_dir

    work_dir.mkdir(parents=True, exist_ok=True)

    if package.is_git:
        return git_checkout(package, work_dir, log_path)

    if not package.archive_url or not package.archive_name:
        raise DownloadError(
            f"Package {package.name} has neither git URL nor archive URL",
            code="no_source",
        )

    archive_path = download_dir / package.archive_name
    if not archive_path.is_file():
        download_file(
            client,
            package.archive_url,
            archive_path,
            expected_checksum=package.sha256,
        )

    return extract_archive(archive_path, work_dir, package.folder_name)


def fetch_sources(
    config: RunConfiguration,
    packages: Iterable[SourcePackage],
    client: httpx.Client | None = None,
) -> dict[str, Path]:
    """Fetch every package, reusing what earlier runs left behind.

    Sources are unpacked directly below ``config.work_dir``; archives are
    cached in ``config.download_dir``. Git output goes to
    ``<build_dir>/sources.log``.

    Args:
        config: Run configuration.
        packages: Packages to fetch.
        client: HTTPX client; a redirect-following client is created
            if not provided.

    Returns:
        Mapping of package name to source folder.
    """
    log_path = config.build_dir / "sources.log"
    owns_client = client is None
    if client is None:
        client = httpx.Client(follow_redirects=True)

    try:
        return {
            package.name: fetch_package(
                client, package, config.work_dir, config.download_dir, log_path
            )
            for package in packages
        }
    finally:
        if owns_client:
            client.close()


__all__ = [
    "DownloadError",
    "DownloadResult",
    "ExtractionError",
    "VerificationError",
    "download_file",
    "extract_archive",
    "fetch_package",
    "fetch_sources",
    "git_checkout",
]
