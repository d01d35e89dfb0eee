# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Flat-file storage for messages and attachments.

Two layers live here:

- :class:`JsonFileStore` is a synchronous document store over opaque keys,
  one pretty-printed JSON file per key. It knows nothing about messages and
  can be swapped for an embedded database without touching callers.
- :class:`MessageStorage` is the async facade used by the application. It
  wraps each message in an envelope ``{storage_key, stored_at, message}``,
  keeps uploads under ``attachments/`` and computes statistics. Blocking
  file I/O runs in a worker thread via :func:`asyncio.to_thread`.

Layout under the storage root::

    messages/msg_<uuid>.json
    attachments/<uuid>.<ext>

Directories are created on first use with mode ``0755``.
"""

from __future__ import annotations

import asyncio
import json
import mimetypes
import os
import tempfile
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .logger import get_logger
from .models import Message, MessageSummary, StorageStats, StoredAttachment, UploadedFile

logger = get_logger("Storage")

DIR_MODE = 0o755
MESSAGE_KEY_PREFIX = "msg_"
SECONDS_PER_DAY = 24 * 60 * 60


class StorageError(RuntimeError):
    """Raised when the storage backend cannot persist data."""


def _is_safe_name(name: str) -> bool:
    return bool(name) and name not in (".", "..") and "/" not in name and "\\" not in name and "\x00" not in name


class JsonFileStore:
    """JSON documents keyed by opaque strings, one file per key.

    Writes go to a temporary file in the same directory and are moved into
    place with :func:`os.replace`, so readers never observe a partial
    document. Unreadable or corrupt documents read as ``None``.
    """

    suffix = ".json"

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def ensure(self) -> None:
        try:
            self.directory.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create storage directory {self.directory}: {exc}") from exc

    def path_for(self, key: str) -> Path:
        if not _is_safe_name(key):
            raise KeyError(key)
        return self.directory / f"{key}{self.suffix}"

    def put(self, key: str, document: dict[str, Any]) -> None:
        self.ensure()
        target = self.path_for(key)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=self.suffix)
        except OSError as exc:
            raise StorageError(f"Cannot write {target}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=4, ensure_ascii=False)
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, target)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"Cannot write {target}: {exc}") from exc

    def get(self, key: str) -> dict[str, Any] | None:
        try:
            path = self.path_for(key)
        except KeyError:
            return None
        try:
            with path.open(encoding="utf-8") as handle:
                document = json.load(handle)
        except (OSError, ValueError):
            return None
        return document if isinstance(document, dict) else None

    def keys(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(
            path.name[: -len(self.suffix)]
            for path in self.directory.iterdir()
            if path.name.endswith(self.suffix) and not path.name.startswith(".")
        )

    def delete(self, key: str) -> bool:
        try:
            path = self.path_for(key)
        except KeyError:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Cannot delete {path}: {exc}") from exc
        return True

    def size_bytes(self) -> int:
        total = 0
        for key in self.keys():
            try:
                total += self.path_for(key).stat().st_size
            except OSError:
                continue
        return total


class MessageStorage:
    """Persistence of messages and attachments under a root directory.

    Args:
        root: Storage root; ``messages/`` and ``attachments/`` live below it.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser()
        self.messages = JsonFileStore(self.root / "messages")
        self.attachments_dir = self.root / "attachments"

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def store_message(self, message: Message) -> str:
        """Persist ``message`` under a fresh key and return the key."""
        storage_key = f"{MESSAGE_KEY_PREFIX}{uuid.uuid4()}"
        envelope = {
            "storage_key": storage_key,
            "stored_at": datetime.now().astimezone().isoformat(timespec="seconds"),
            "message": message.to_document(),
        }
        await asyncio.to_thread(self.messages.put, storage_key, envelope)
        logger.debug(f"Stored message {message.id} as {storage_key}")
        return storage_key

    async def retrieve_message(self, storage_key: str) -> Message | None:
        envelope = await asyncio.to_thread(self.messages.get, storage_key)
        return self._message_from(envelope)

    async def delete_message(self, storage_key: str) -> bool:
        return await asyncio.to_thread(self.messages.delete, storage_key)

    async def list_messages(
        self,
        domain: str | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[MessageSummary]:
        """Summaries of stored messages in file enumeration order.

        ``offset`` skips files before the domain filter is applied; ``limit``
        bounds the number of summaries returned (``None`` for all).
        """
        return await asyncio.to_thread(self._list_sync, domain, limit, max(offset, 0))

    async def count_messages(self) -> int:
        return len(await asyncio.to_thread(self.messages.keys))

    async def cleanup_older_than(self, retention_days: int, now: float | None = None) -> int:
        """Delete messages whose ``timestamp`` predates the retention window.

        Attachments are left in place. Failures on single files are logged
        and skipped.

        Returns:
            Number of messages deleted.
        """
        cutoff = (time.time() if now is None else now) - retention_days * SECONDS_PER_DAY
        return await asyncio.to_thread(self._cleanup_sync, cutoff)

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------
    async def store_attachment(self, upload: UploadedFile) -> StoredAttachment | None:
        """Copy an upload into the attachment store.

        Returns None when the upload has no filename or cannot be written.
        """
        if not upload.filename:
            return None
        attachment_id = str(uuid.uuid4())
        extension = Path(upload.filename).suffix
        filename = f"{attachment_id}{extension}"
        path = self.attachments_dir / filename
        try:
            await asyncio.to_thread(self._write_bytes, path, upload.content)
        except OSError as exc:
            logger.warning(f"Could not store attachment {upload.filename}: {exc}")
            return None
        return StoredAttachment(
            id=attachment_id,
            filename=filename,
            original_name=upload.filename,
            size=upload.size,
            mime_type=upload.content_type or "application/octet-stream",
            path=str(path.resolve()),
        )

    async def get_attachment(self, attachment_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._get_attachment_sync, attachment_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    async def stats(self) -> StorageStats:
        return await asyncio.to_thread(self._stats_sync)

    async def clear_all(self) -> tuple[int, int]:
        """Delete every message and attachment file.

        Returns:
            ``(messages_deleted, attachments_deleted)``.
        """
        return await asyncio.to_thread(self._clear_sync)

    # ------------------------------------------------------------------
    # Blocking helpers (run in worker threads)
    # ------------------------------------------------------------------
    @staticmethod
    def _message_from(envelope: dict[str, Any] | None) -> Message | None:
        if not envelope or not isinstance(envelope.get("message"), dict):
            return None
        try:
            return Message.model_validate(envelope["message"])
        except ValidationError:
            return None

    def _write_bytes(self, path: Path, content: bytes) -> None:
        self.attachments_dir.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        path.write_bytes(content)

    def _attachment_files(self) -> list[Path]:
        if not self.attachments_dir.is_dir():
            return []
        return sorted(path for path in self.attachments_dir.iterdir() if path.is_file())

    def _list_sync(self, domain: str | None, limit: int | None, offset: int) -> list[MessageSummary]:
        summaries: list[MessageSummary] = []
        for key in self.messages.keys()[offset:]:
            if limit is not None and len(summaries) >= limit:
                break
            envelope = self.messages.get(key)
            if not envelope or not isinstance(envelope.get("message"), dict):
                continue
            message = envelope["message"]
            if domain and message.get("domain") != domain:
                continue
            try:
                summaries.append(
                    MessageSummary(
                        storage_key=envelope.get("storage_key", key),
                        stored_at=envelope.get("stored_at", ""),
                        id=message.get("id", ""),
                        domain=message.get("domain", ""),
                        from_addr=message.get("from") or "",
                        to=message.get("to") or "",
                        subject=message.get("subject") or "",
                        timestamp=message.get("timestamp") or 0,
                    )
                )
            except ValidationError:
                continue
        return summaries

    def _cleanup_sync(self, cutoff: float) -> int:
        deleted = 0
        for key in self.messages.keys():
            envelope = self.messages.get(key)
            if not envelope or not isinstance(envelope.get("message"), dict):
                continue
            timestamp = envelope["message"].get("timestamp")
            if not isinstance(timestamp, (int, float)) or timestamp >= cutoff:
                continue
            try:
                if self.messages.delete(key):
                    deleted += 1
            except StorageError as exc:
                logger.warning(f"Cleanup skipped {key}: {exc}")
        return deleted

    def _get_attachment_sync(self, attachment_id: str) -> dict[str, Any] | None:
        if not _is_safe_name(attachment_id) or not self.attachments_dir.is_dir():
            return None
        matches = sorted(self.attachments_dir.glob(f"{attachment_id}.*"))
        exact = self.attachments_dir / attachment_id
        if not matches and exact.is_file():
            matches = [exact]
        if not matches:
            return None
        path = matches[0]
        try:
            content = path.read_bytes()
        except OSError:
            return None
        mime_type, _ = mimetypes.guess_type(path.name)
        return {
            "path": str(path),
            "content": content,
            "size": len(content),
            "mime_type": mime_type or "application/octet-stream",
        }

    def _stats_sync(self) -> StorageStats:
        message_keys = self.messages.keys()
        attachment_files = self._attachment_files()
        total = self.messages.size_bytes()
        for path in attachment_files:
            try:
                total += path.stat().st_size
            except OSError:
                continue
        return StorageStats(
            total_messages=len(message_keys),
            total_attachments=len(attachment_files),
            total_size_bytes=total,
            total_size_mb=round(total / (1024 * 1024), 2),
            storage_path=str(self.root),
        )

    def _clear_sync(self) -> tuple[int, int]:
        messages_deleted = 0
        for key in self.messages.keys():
            try:
                if self.messages.delete(key):
                    messages_deleted += 1
            except StorageError as exc:
                logger.warning(f"Clear skipped {key}: {exc}")
        attachments_deleted = 0
        for path in self._attachment_files():
            try:
                path.unlink()
                attachments_deleted += 1
            except OSError as exc:
                logger.warning(f"Clear skipped {path.name}: {exc}")
        return messages_deleted, attachments_deleted
