"""Periodic expiry of image messages and their blobs."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from .errors import StorageError

if TYPE_CHECKING:
    from .blobs import BlobStore
    from .store import ChatStore


class RetentionSweeper:
    """
    Deletes messages that carry an image once they are older than the
    retention window, together with the image file.

    Messages without an image are never touched. Rows inserted while a sweep
    runs are newer than its cutoff and therefore safe.
    """

    def __init__(self, store: ChatStore, blobs: BlobStore, retention_s: float) -> None:
        self.store = store
        self.blobs = blobs
        self.retention_s = float(retention_s)
        self.log = logging.getLogger("rgcd.retention")

    def run_once(self) -> int:
        """Run one sweep. Returns the number of purged messages."""
        cutoff = self.store.now() - timedelta(seconds=self.retention_s)

        refs = self.store.old_image_refs(cutoff)
        removed = 0
        for ref in refs:
            try:
                if self.blobs.delete(ref):
                    removed += 1
            except (OSError, ValueError) as e:
                self.log.warning("Failed to delete blob ref=%s: %s", ref, e)

        purged = self.store.purge_old_image_messages(cutoff)
        self.log.info(
            "Retention sweep cutoff=%s blobs_deleted=%s messages_purged=%s",
            cutoff.isoformat(),
            removed,
            purged,
        )
        return purged

    def run_safely(self) -> int:
        try:
            return self.run_once()
        except StorageError as e:
            self.log.error("Retention sweep failed: %s", e.detail)
            return 0
