# cache.py
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Dict, Optional

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Report-level caching, owned by the caller (CLI `scan`), not the engine:
#   entry key = (pipeline path, sha256(pipeline text))
#
# Layout:
#   root/
#     <sha256(path)>/
#       <content hash>.json      report dict as produced by Report.to_dict()
#
# An unchanged file is served from its entry; any edit changes the content
# hash and misses.
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".ciadvisor/cache"
FORMAT_VERSION = 1


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_hash(text: str) -> str:
    return _sha256_str(text)


class AnalysisCache:
    """
    File-based store of analysis reports keyed by (path, content hash).
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_dir(self, path: str) -> Path:
        d = self.root / _sha256_str(str(path))
        d.mkdir(parents=True, exist_ok=True)
        return d

    def entry_path(self, path: str, digest: str) -> Path:
        return self._path_dir(path) / f"{digest}.json"

    def get(self, path: str, digest: str) -> Optional[Dict[str, Any]]:
        """Stored report dict, or None on a miss or an unreadable entry."""
        entry = self.entry_path(path, digest)
        if not entry.exists():
            return None
        try:
            stored = json.loads(entry.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if stored.get("v") != FORMAT_VERSION or stored.get("path") != str(path):
            return None
        return stored.get("report")

    def put(self, path: str, digest: str, report: Dict[str, Any]) -> Path:
        entry = self.entry_path(path, digest)
        tmp = entry.with_suffix(".json.tmp")
        payload = {"v": FORMAT_VERSION, "path": str(path), "report": report}
        try:
            # write to tmp, then atomic rename
            tmp.write_text(_json_dumps_stable(payload), encoding="utf-8")
            tmp.replace(entry)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return entry

    def prune(self, path: str, keep: int = 3) -> None:
        """
        Keep only the newest N entries for a path.
        Uses file mtime as "newest".
        """
        d = self._path_dir(path)
        entries = sorted(d.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in entries[keep:]:
            p.unlink(missing_ok=True)
