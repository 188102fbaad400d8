from __future__ import annotations

import http.client
import logging
import os
import tarfile
import tempfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Iterator

from .errors import ArtifactHostError, ExtractionFailed, TransferFailed
from .github import ArtifactHost
from .models import AssetRef, InstallManifest, ReleaseDescriptor

logger = logging.getLogger(__name__)

EXECUTABLE_MODE = 0o755


def _strip_top_level(archive: tarfile.TarFile) -> Iterator[tarfile.TarInfo]:
    """Yield archive members with their first path component removed.

    Members that are only the top-level directory itself are skipped, so
    ``orbitd-v1/orbitd`` lands at ``<install_dir>/orbitd``.
    """
    for member in archive.getmembers():
        parts = PurePosixPath(member.name).parts
        if len(parts) <= 1:
            continue
        member.name = str(PurePosixPath(*parts[1:]))
        if member.islnk():
            link_parts = PurePosixPath(member.linkname).parts
            member.linkname = str(PurePosixPath(*link_parts[1:])) if len(link_parts) > 1 else member.linkname
        yield member


def extract_archive(archive_path: Path, install_dir: Path, *, asset_name: str) -> None:
    """Extract a tarball into ``install_dir`` stripping the top-level directory.

    Raises:
        ExtractionFailed: If the archive is corrupt, truncated, or contains
            members the data filter refuses.
    """
    try:
        with tarfile.open(archive_path, mode="r:*") as archive:
            archive.extractall(install_dir, members=_strip_top_level(archive), filter="data")
    except (tarfile.TarError, EOFError, zlib.error) as exc:
        raise ExtractionFailed(asset_name, str(exc) or type(exc).__name__) from exc


def mark_executable(install_dir: Path) -> dict[Path, bool]:
    """Set the executable bits on every regular file under ``install_dir``.

    A failed chmod is logged and the file is reported with whatever execute
    access it already has. It never fails the install.
    """
    results: dict[Path, bool] = {}
    for path in sorted(install_dir.rglob("*")):
        if not path.is_file() or path.is_symlink():
            continue
        if os.name != "posix":
            results[path] = False
            continue
        try:
            path.chmod(EXECUTABLE_MODE)
            results[path] = True
        except OSError as exc:
            logger.warning("Failed to mark %s executable: %s", path, exc)
            results[path] = os.access(path, os.X_OK)
    return results


class ArtifactInstaller:
    """Downloads resolved assets and merges them into one flat install tree."""

    def __init__(self, index: ArtifactHost) -> None:
        self.index = index

    def install(self, descriptor: ReleaseDescriptor, install_dir: Path) -> InstallManifest:
        install_dir.mkdir(parents=True, exist_ok=True)
        logger.debug("Downloading assets to %s", install_dir)

        with tempfile.TemporaryDirectory(prefix="orbit-download-") as download_root:
            for asset in descriptor.assets:
                archive_path = self._download(asset, Path(download_root))
                logger.debug("Extracting %s ...", asset.name)
                extract_archive(archive_path, install_dir, asset_name=asset.name)

        executable = mark_executable(install_dir)
        files = frozenset(path for path in install_dir.rglob("*") if path.is_file())
        logger.info("Installed %d file(s) from release %s into %s", len(files), descriptor.tag, install_dir)
        return InstallManifest(install_dir=install_dir, files=files, executable=executable)

    def _download(self, asset: AssetRef, download_root: Path) -> Path:
        logger.debug("Downloading %s ...", asset.name)
        dest = download_root / asset.name
        try:
            locator = self.index.asset_locator(asset)
            written = self.index.fetch(locator, dest)
        except (ArtifactHostError, OSError, http.client.HTTPException) as exc:
            raise TransferFailed(asset.name, str(exc)) from exc

        if asset.size is not None and written != asset.size:
            raise TransferFailed(asset.name, f"incomplete transfer ({written} of {asset.size} bytes)")
        if written == 0:
            raise TransferFailed(asset.name, "empty download")
        return dest
