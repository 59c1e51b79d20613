from __future__ import annotations

import logging
import os
import re
import time
from pathlib import Path

from .paths import ensure_private_dir

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_name(original_name: str | None) -> str:
    base = os.path.basename(str(original_name or "")).strip()
    base = _UNSAFE.sub("_", base).strip("._")
    return base[:96] or "upload"


class BlobStore:
    """Uploaded images as flat files under one directory.

    References are the bare file names, ``<unix ms>-<sanitized name>``.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.log = logging.getLogger("rgcd.blobs")
        ensure_private_dir(self.root)

    def path_for(self, ref: str) -> Path:
        if not isinstance(ref, str) or not ref or ref != os.path.basename(ref):
            raise ValueError(f"invalid blob reference {ref!r}")
        if ref in (".", ".."):
            raise ValueError(f"invalid blob reference {ref!r}")
        return self.root / ref

    def save(self, data: bytes, original_name: str | None) -> str:
        stem = f"{int(time.time() * 1000)}-{_safe_name(original_name)}"
        ref = stem
        n = 1
        while (self.root / ref).exists():
            ref = f"{stem}.{n}"
            n += 1

        tmp = self.root / f".{ref}.part"
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, self.root / ref)

        self.log.info("Stored blob ref=%s bytes=%s", ref, len(data))
        return ref

    def exists(self, ref: str) -> bool:
        try:
            return self.path_for(ref).is_file()
        except ValueError:
            return False

    def delete(self, ref: str) -> bool:
        """Delete a blob. Returns False if it was already gone."""
        p = self.path_for(ref)
        try:
            p.unlink()
        except FileNotFoundError:
            return False
        self.log.info("Deleted blob ref=%s", ref)
        return True
