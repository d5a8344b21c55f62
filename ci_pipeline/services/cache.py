"""Build cache transfer.

Caches are gzipped tarballs stored under a cache root, one archive per cache
key (``{org_id}/{repo_id}/{key}.tar.gz``). Downloading a key with no archive
is a cache miss, not an error.
"""

from __future__ import annotations

import logging
import os
import tarfile
import tempfile
from pathlib import Path
from typing import Protocol, Sequence

from ci_pipeline.cancellation import CancelScope
from ci_pipeline.errors import CacheError
from ci_pipeline.payload import JobDescriptor
from ci_pipeline.pipeline_config import PipelineConfig

logger = logging.getLogger(__name__)


def cache_key(descriptor: JobDescriptor, pipeline: PipelineConfig) -> str:
    """Cache key shared by the download and upload of one run."""
    return f"{descriptor.org_id}/{descriptor.repo_id}/{pipeline.cache.key}"


class CacheStore(Protocol):
    def download(self, scope: CancelScope, key: str) -> None: ...

    def upload(self, scope: CancelScope, key: str, paths: Sequence[str]) -> None: ...


class LocalCacheStore:
    """Stores cache archives in a local (or mounted) directory."""

    def __init__(self, root: Path, repo_dir: Path) -> None:
        self.root = root
        self.repo_dir = repo_dir

    def archive_path(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def download(self, scope: CancelScope, key: str) -> None:
        """Extract the archive for *key* into the repository.

        Raises:
            CacheError: If the archive exists but cannot be extracted.
        """
        scope.raise_if_cancelled()
        archive = self.archive_path(key)
        if not archive.exists():
            logger.info("No cache found for key %s", key)
            return
        try:
            with tarfile.open(archive, "r:gz") as tar:
                tar.extractall(self.repo_dir, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise CacheError(f"unable to extract cache {key}: {e}") from e
        logger.info("Cache %s restored", key)

    def upload(self, scope: CancelScope, key: str, paths: Sequence[str]) -> None:
        """Archive *paths* (relative to the repository) under *key*.

        Missing paths are skipped. The archive is replaced atomically.

        Raises:
            CacheError: If the archive cannot be written.
        """
        scope.raise_if_cancelled()
        existing = [p for p in paths if (self.repo_dir / p).exists()]
        for p in paths:
            if p not in existing:
                logger.warning("Cache path %s does not exist, skipping", p)
        if not existing:
            logger.info("Nothing to cache for key %s", key)
            return

        archive = self.archive_path(key)
        try:
            archive.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=archive.parent, suffix=".tmp")
            os.close(fd)
            try:
                with tarfile.open(tmp_name, "w:gz") as tar:
                    for rel in sorted(existing):
                        scope.raise_if_cancelled()
                        tar.add(self.repo_dir / rel, arcname=rel)
                os.replace(tmp_name, archive)
            finally:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
        except (tarfile.TarError, OSError) as e:
            raise CacheError(f"unable to write cache {key}: {e}") from e
        logger.info("Cache %s uploaded (%d paths)", key, len(existing))
