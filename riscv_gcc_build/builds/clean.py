"""Removal of build outputs for the clean and cleanall actions."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from riscv_gcc_build.config import RunConfiguration, find_timestamp_markers
from riscv_gcc_build.sources.models import SourcesFileSchema, default_packages

logger = logging.getLogger(__name__)


def clean_paths(
    config: RunConfiguration,
    everything: bool = False,
    overrides: SourcesFileSchema | None = None,
) -> list[Path]:
    """Return the paths removed by ``clean`` or ``cleanall``.

    ``clean`` covers the build, install and scripts folders plus the
    sources unpacked from archives. ``cleanall`` adds git checkouts, the
    download cache, the deploy folder and the timestamp markers.

    Args:
        config: Run configuration.
        everything: Select the ``cleanall`` scope.
        overrides: Source overrides, to locate the source folders.
    """
    paths = [config.build_dir, config.install_dir, config.scripts_dir]

    archives = default_packages(config.release_version, False, overrides)
    paths.extend(config.work_dir / p.folder_name for p in archives.values() if not p.is_git)

    if everything:
        gits = default_packages(config.release_version, True, overrides)
        paths.extend(config.work_dir / p.folder_name for p in gits.values() if p.is_git)
        paths.extend([config.download_dir, config.deploy_dir])
        paths.extend(config.work_dir / name for name in find_timestamp_markers(config.work_dir))

    unique: list[Path] = []
    for path in paths:
        if path not in unique:
            unique.append(path)
    return unique


def clean(
    config: RunConfiguration,
    everything: bool = False,
    overrides: SourcesFileSchema | None = None,
) -> list[Path]:
    """Remove build outputs.

    Returns:
        Paths that existed and were removed.
    """
    removed: list[Path] = []
    for path in clean_paths(config, everything, overrides):
        if path.is_dir() and not path.is_symlink():
            logger.info("Removing %s", path)
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            logger.info("Removing %s", path)
            path.unlink()
        else:
            continue
        removed.append(path)
    return removed


__all__ = ["clean", "clean_paths"]
