"""Filesystem storage backend for uploaded verification documents.

Files are written under ``<root>/<folder>/<uuid>_<name>`` and the returned
storage path is relative to the root, so the root can move between hosts
without rewriting stored rows.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)

_SAFE_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def _validate_path_component(value: str, name: str) -> None:
    """Reject folder segments that contain path-separator or other unsafe chars.

    Raises
    ------
    ValueError
        If *value* contains characters outside the safe set.
    """
    if not _SAFE_ID_RE.match(value):
        raise ValueError(f"Invalid {name}: contains unsafe characters")


def _safe_filename(filename: str) -> str:
    name = Path(filename or "document").name
    name = _UNSAFE_NAME_CHARS.sub("_", name).lstrip(".")
    return name[:128] or "document"


def _resolve_safe_path(root: Path, relative: str) -> Path:
    """Resolve *relative* under *root*, rejecting paths that escape it.

    Raises
    ------
    ValueError
        If the resolved path is outside the storage root (path traversal).
    """
    base_resolved = root.resolve()
    full_path = (base_resolved / relative).resolve()
    if not full_path.is_relative_to(base_resolved):
        raise ValueError("Path traversal detected")
    return full_path


class LocalStorageService:
    """Store uploaded files on the local filesystem.

    Parameters
    ----------
    root:
        Storage root directory; created on first upload.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    async def upload(
        self,
        stream: BinaryIO | bytes,
        filename: str,
        content_type: str,
        folder: str,
    ) -> str:
        """Persist *stream* and return its storage path.

        Parameters
        ----------
        stream:
            File object positioned at the start of the content, or raw bytes.
        filename:
            Client-supplied name; sanitised before use.
        content_type:
            MIME type, recorded in the log only.
        folder:
            Slash-separated folder of safe segments (e.g. ``students/<tenant>``).

        Returns
        -------
        str
            Path of the stored file relative to the storage root.
        """
        segments = [s for s in folder.split("/") if s]
        for segment in segments:
            _validate_path_component(segment, "folder")

        relative = "/".join([*segments, f"{uuid.uuid4().hex}_{_safe_filename(filename)}"])
        target = _resolve_safe_path(self._root, relative)
        data = stream if isinstance(stream, bytes) else stream.read()

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("Stored %s (%s, %d bytes) at %s", filename, content_type, len(data), relative)
        return relative

    async def delete(self, storage_path: str) -> bool:
        """Remove a stored file; returns ``False`` when it does not exist."""
        target = _resolve_safe_path(self._root, storage_path)
        if not target.is_file():
            return False
        await asyncio.to_thread(target.unlink)
        logger.info("Deleted stored file %s", storage_path)
        return True
