# cache.py
from __future__ import annotations

import hashlib
import json
import os
import tarfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from .expressions import render
from .model import CachePolicy

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Key-addressed blob cache shared by every run and every group:
#
#   root/
#     entries/<sha256(key)>.json     manifest: key, blob file, written_at
#     blobs/<sha256(key)>-<uuid>.tar.gz
#
# resolve(CacheKey):
#   1. exact match on the primary key
#   2. each restore key in declared order: newest entry whose key starts
#      with that prefix (first prefix with a match wins)
#   3. None (a miss is a normal outcome)
#
# store(key, blob) is insert-if-absent: the manifest is written to a temp
# file and hard-linked into place, so exactly one writer wins even across
# processes. Later writers drop their blob and get the existing entry back.
#
# save_paths(key, paths) streams the tar.gz into a scratch file under blobs/
# and hands it to store(), which moves it into place.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".relayci/cache"


@dataclass(frozen=True)
class CacheKey:
    primary: str
    restore_keys: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CacheEntry:
    key: str
    blob: Path
    written_at: float


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def cache_key_for(
    policy: CachePolicy,
    context: Mapping[str, Any],
    *,
    root: str | Path = ".",
) -> CacheKey:
    """Render a job's cache policy into a concrete key for one instance."""
    primary = render(policy.key, context, root=root)
    restore = tuple(render(k, context, root=root) for k in policy.restore_keys)
    return CacheKey(primary=primary, restore_keys=tuple(k for k in restore if k))


class CacheStore:
    """File-based, append-only cache store."""

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).expanduser().resolve()
        self._entries = self.root / "entries"
        self._blobs = self.root / "blobs"
        self._entries.mkdir(parents=True, exist_ok=True)
        self._blobs.mkdir(parents=True, exist_ok=True)

    def manifest_path(self, key: str) -> Path:
        return self._entries / f"{_sha256_str(key)}.json"

    def _read(self, manifest: Path) -> Optional[CacheEntry]:
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
            blob = self._blobs / data["blob"]
            entry = CacheEntry(key=data["key"], blob=blob, written_at=float(data["written_at"]))
        except (OSError, ValueError, KeyError, TypeError):
            return None
        if not blob.exists():
            return None
        return entry

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._read(self.manifest_path(key))

    def entries(self) -> List[CacheEntry]:
        out: List[CacheEntry] = []
        for man in sorted(self._entries.glob("*.json")):
            entry = self._read(man)
            if entry is not None:
                out.append(entry)
        return out

    def resolve(self, key: CacheKey) -> Optional[CacheEntry]:
        exact = self.get(key.primary)
        if exact is not None:
            return exact
        if not key.restore_keys:
            return None

        known = self.entries()
        for prefix in key.restore_keys:
            candidates = [e for e in known if e.key.startswith(prefix)]
            if candidates:
                return max(candidates, key=lambda e: (e.written_at, e.key))
        return None

    def scratch_path(self) -> Path:
        """A fresh temp file name inside the blob directory (same filesystem as the blobs)."""
        return self._blobs / f".{uuid.uuid4().hex}.tmp"

    def save_paths(self, key: str, paths: Iterable[str], root: str | Path = ".") -> CacheEntry:
        """Archive paths straight to disk and store the archive under key."""
        existing = self.get(key)
        if existing is not None:
            return existing
        scratch = self.scratch_path()
        try:
            archive_paths(paths, scratch, root)
            return self.store(key, scratch)
        finally:
            scratch.unlink(missing_ok=True)

    def store(self, key: str, blob: bytes | Path) -> CacheEntry:
        """
        Save blob under key unless an entry already exists.
        blob is either the payload or a file in scratch_path(), which is moved into place.
        Returns the entry that is stored under key afterwards (ours or the first writer's).
        """
        manifest = self.manifest_path(key)
        existing = self._read(manifest)
        if existing is not None:
            if not isinstance(blob, (bytes, bytearray)):
                Path(blob).unlink(missing_ok=True)
            return existing

        token = uuid.uuid4().hex
        digest = manifest.stem
        blob_path = self._blobs / f"{digest}-{token}.tar.gz"
        tmp = self._entries / f".{digest}.{token}.tmp"
        written_at = time.time()

        # the blob must be complete before the manifest becomes visible
        if isinstance(blob, (bytes, bytearray)):
            blob_path.write_bytes(blob)
        else:
            os.replace(blob, blob_path)
        linked = False
        try:
            tmp.write_text(
                json.dumps({"key": key, "blob": blob_path.name, "written_at": written_at}, sort_keys=True),
                encoding="utf-8",
            )
            try:
                os.link(tmp, manifest)
                linked = True
            except FileExistsError:
                pass
        finally:
            tmp.unlink(missing_ok=True)
            if not linked:
                blob_path.unlink(missing_ok=True)

        if not linked:
            winner = self._read(manifest)
            if winner is None:
                raise RuntimeError(f"cache entry for {key!r} exists but is unreadable")
            return winner
        return CacheEntry(key=key, blob=blob_path, written_at=written_at)

    def prune(self, keep: int = 3, *, prefix: str = "") -> List[str]:
        """
        Keep only the newest N entries whose key starts with prefix.
        Returns the removed keys.
        """
        matching = [e for e in self.entries() if e.key.startswith(prefix)]
        matching.sort(key=lambda e: e.written_at, reverse=True)
        removed: List[str] = []
        for entry in matching[keep:]:
            self.manifest_path(entry.key).unlink(missing_ok=True)
            entry.blob.unlink(missing_ok=True)
            removed.append(entry.key)
        return removed


# ---------------------------------------------------------------------
# Blob helpers: job cache paths <-> tar.gz bytes
# ---------------------------------------------------------------------
# Paths inside the workspace are archived under "root/", paths under the
# user's home ("~/.cargo") under "home/". Anything else is skipped.

def _arc_prefix(path: Path, root: Path) -> Optional[str]:
    for label, base in (("root", root), ("home", Path.home().resolve())):
        try:
            rel = path.relative_to(base)
        except ValueError:
            continue
        return f"{label}/{rel.as_posix()}" if str(rel) != "." else label
    return None


def _iter_files(src: Path) -> Iterable[Path]:
    if src.is_file():
        yield src
        return
    for p in sorted(src.rglob("*")):
        if p.is_file():
            yield p


def archive_paths(paths: Iterable[str], dest: str | Path, root: str | Path = ".") -> Path:
    """Pack the given files/directories into a tar.gz file at dest, streaming from disk."""
    root_p = Path(root).resolve()
    out = Path(dest)
    with tarfile.open(str(out), mode="w:gz") as tar:
        for entry in paths:
            src = (root_p / Path(entry).expanduser()).resolve()
            if not src.exists():
                continue
            for f in _iter_files(src):
                arcname = _arc_prefix(f, root_p)
                if arcname is None:
                    continue
                tar.add(str(f), arcname=arcname, recursive=False)
    return out


def extract(entry: CacheEntry, root: str | Path = ".") -> int:
    """
    Restore a blob into the workspace (and home directory).
    Returns the number of restored members.
    """
    targets = {"root": Path(root).resolve(), "home": Path.home()}
    restored = 0
    with tarfile.open(str(entry.blob), mode="r:gz") as tar:
        for member in tar.getmembers():
            head, _, rest = member.name.partition("/")
            dest = targets.get(head)
            if dest is None or not rest:
                continue
            member.name = rest
            tar.extract(member, path=str(dest), filter="data")
            restored += 1
    return restored
