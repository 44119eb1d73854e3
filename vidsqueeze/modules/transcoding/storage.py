"""Working-directory storage for uploads and encode artifacts.

Every job owns a set of files named after its id inside one directory:

    <id><ext>       original upload
    <id>_1.mp4      pass 1 output
    <id>_2.mp4      final output, served as <id>.mp4
    <id>.webp       thumbnail
    <id>.log*       two-pass statistics
"""

import logging
import os
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from fastapi import UploadFile

from vidsqueeze.core.logging import log_info, log_warning
from vidsqueeze.modules.transcoding.exceptions import (
    AccessDenied,
    ArtifactNotFound,
    FileTooLarge,
)

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024
FINAL_SUFFIX = "_2"
DELIVERY_EXTENSION = ".mp4"
THUMBNAIL_EXTENSION = ".webp"
RESERVED_EXTENSIONS = frozenset({THUMBNAIL_EXTENSION, ".log"})
_EXTENSION_RE = re.compile(r"\.[a-z0-9]{1,10}")


@dataclass(frozen=True)
class StoredUpload:
    """An upload written to the working directory."""
    job_id: str
    path: Path
    size: int


@dataclass(frozen=True)
class DeliveryTarget:
    """A resolved artifact request."""
    path: Path
    download_name: str
    job_id: str
    is_final: bool


def new_job_id() -> str:
    return str(uuid.uuid4())


def upload_extension(filename: Optional[str]) -> str:
    """Extension kept on the stored upload.

    Extensions that would collide with a job artifact are dropped.
    """
    extension = Path(filename or "").suffix.lower()
    if not _EXTENSION_RE.fullmatch(extension) or extension in RESERVED_EXTENSIONS:
        return ""
    return extension


def resolve_within(root: Path, name: str) -> Path:
    """Resolve ``name`` under ``root``, following symlinks.

    Raises:
        AccessDenied: The canonical path is ``root`` itself or outside it,
            or ``name`` is not a usable file name
    """
    if "\x00" in name:
        raise AccessDenied()
    try:
        candidate = (root / name.lstrip("/")).resolve()
    except (OSError, ValueError) as e:
        raise AccessDenied() from e
    if candidate == root or root not in candidate.parents:
        raise AccessDenied()
    return candidate


class ArtifactStore:
    """Names, writes and removes files in the working directory."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    # ==================== Naming ====================

    def upload_path(self, job_id: str, extension: str = "") -> Path:
        return self.root / f"{job_id}{extension}"

    def pass_output(self, job_id: str, pass_number: int) -> Path:
        return self.root / f"{job_id}_{pass_number}.mp4"

    def final_output(self, job_id: str) -> Path:
        return self.pass_output(job_id, 2)

    def thumbnail(self, job_id: str) -> Path:
        return self.root / f"{job_id}{THUMBNAIL_EXTENSION}"

    def passlog_prefix(self, job_id: str) -> Path:
        return self.root / f"{job_id}.log"

    def passlog_files(self, job_id: str) -> list[Path]:
        return sorted(self.root.glob(f"{job_id}.log*"))

    # ==================== Uploads ====================

    async def save_upload(self, upload: UploadFile, max_bytes: int) -> StoredUpload:
        """Stream an upload to ``<id><ext>`` without buffering it in memory.

        Raises:
            FileTooLarge: Upload exceeded ``max_bytes``; the partial file is removed
        """
        self.ensure_root()
        job_id = new_job_id()
        extension = upload_extension(upload.filename)
        path = self.upload_path(job_id, extension)
        size = 0
        try:
            with open(path, "wb") as out:
                while True:
                    chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > max_bytes:
                        raise FileTooLarge()
                    out.write(chunk)
        except BaseException:
            self.delete(path)
            raise
        finally:
            await upload.close()

        log_info(
            logger,
            "Stored upload",
            job_id=job_id,
            path=str(path),
            original_filename=upload.filename,
            size_bytes=size,
        )
        return StoredUpload(job_id=job_id, path=path, size=size)

    # ==================== Deletion ====================

    def delete(self, *paths: Path) -> list[Path]:
        """Delete files, ignoring ones that are already gone.

        Returns:
            Paths that were actually removed
        """
        removed = []
        for path in paths:
            try:
                os.unlink(path)
            except FileNotFoundError:
                continue
            except IsADirectoryError:
                continue
            except OSError as e:
                log_warning(logger, "Failed to delete artifact", path=str(path), error=str(e))
                continue
            removed.append(Path(path))
        return removed

    def delete_intermediates(self, job_id: str, upload_path: Path) -> list[Path]:
        """Remove everything a finished encode no longer needs."""
        return self.delete(
            upload_path,
            self.pass_output(job_id, 1),
            *self.passlog_files(job_id),
        )

    def delete_delivered(self, job_id: str) -> list[Path]:
        return self.delete(self.final_output(job_id), self.thumbnail(job_id))

    def iter_files(self) -> Iterator[Path]:
        """Regular files directly inside the working directory."""
        if not self.root.is_dir():
            return
        with os.scandir(self.root) as entries:
            for entry in entries:
                if entry.is_file(follow_symlinks=False):
                    yield Path(entry.path)

    # ==================== Delivery ====================

    def resolve_safe(self, name: str) -> Path:
        """Canonicalize ``name`` against the working directory.

        Raises:
            AccessDenied: The canonical path is outside the working directory
        """
        return resolve_within(self.root, name)

    def resolve_delivery(self, name: str) -> DeliveryTarget:
        """Map a requested artifact name to a file on disk.

        ``<id>.mp4`` names the final output ``<id>_2.mp4``; any other name
        is served as-is.

        Raises:
            AccessDenied: Path traversal attempt
            ArtifactNotFound: No such file
        """
        requested = self.resolve_safe(name)

        if requested.suffix.lower() == DELIVERY_EXTENSION:
            job_id = requested.stem
            path = self.resolve_safe(
                str(requested.with_name(f"{job_id}{FINAL_SUFFIX}{DELIVERY_EXTENSION}").relative_to(self.root))
            )
            target = DeliveryTarget(path=path, download_name=requested.name, job_id=job_id, is_final=True)
        else:
            target = DeliveryTarget(path=requested, download_name=requested.name, job_id=requested.stem, is_final=False)

        if not target.path.is_file():
            raise ArtifactNotFound()
        return target
