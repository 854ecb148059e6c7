# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import re
import tarfile
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import CacheKeyError
from .model import CacheEntry, JobInstance

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Dependency caching in two halves:
#
#   CacheKeyResolver  pure: template + inputs -> primary key + restore keys
#   LocalCacheStore   storage collaborator: get / put / restore tarballs
#
# A template is a "-"-joined string with {placeholders}:
#
#   "npm-{os}-{matrix.node}-{hash}"
#     key           npm-ubuntu-latest-18-3f9a...
#     restore keys  npm-ubuntu-latest-18-, npm-ubuntu-latest-, npm-
#
# {hash} is the content hash of the job's `hash_files` (the lockfile).
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".ciforge/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".ciforge/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]
MAX_KEY_LENGTH = 512

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][\w.]*)\}")


@dataclass(frozen=True)
class ResolvedKey:
    key: str
    restore_keys: Tuple[str, ...] = ()


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand patterns into concrete paths.
    Supports:
      - file path: "package-lock.json"
      - dir path:  "src/"
      - glob:      "**/package-lock.json", "packages/*/yarn.lock"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(repo_root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def hash_files(patterns: Sequence[str], root: str | Path = ".") -> str:
    """
    Content hash of every file matched by `patterns` under `root`.

    Relative paths and contents both count; ordering is by path so the
    result does not depend on pattern order or filesystem traversal.
    Returns "" when nothing matches.
    """
    repo_root = Path(root).resolve()
    fps: List[Tuple[str, str]] = []
    for p in _resolve_globs(repo_root, patterns):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, repo_root)
            if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
                continue
            fps.append((rel, _hash_file_contents(f)))
    if not fps:
        return ""
    fps.sort()
    return _sha256_str(_json_dumps_stable(fps))


# ---------------------------------------------------------------------
# Key resolution
# ---------------------------------------------------------------------

class CacheKeyResolver:
    """Pure function of (template, inputs): same inputs, same key."""

    def resolve(
        self,
        template: str,
        inputs: Mapping[str, object],
        restore_templates: Optional[Sequence[str]] = None,
    ) -> ResolvedKey:
        key = self._substitute(template, inputs)
        if restore_templates:
            restore = [self._substitute(t, inputs) for t in restore_templates]
        else:
            restore = [self._substitute(t, inputs) for t in self.derive_restore_templates(template)]

        # most-specific first, no duplicates, never the primary key itself
        ordered: List[str] = []
        for r in sorted(restore, key=len, reverse=True):
            if r and r != key and r not in ordered:
                ordered.append(r)
        return ResolvedKey(key=key, restore_keys=tuple(ordered))

    @staticmethod
    def placeholders(template: str) -> List[str]:
        return _PLACEHOLDER_RE.findall(template)

    @staticmethod
    def derive_restore_templates(template: str) -> List[str]:
        """
        Prefixes of the template ending right before each segment that holds a
        placeholder, longest first.
        """
        segments = template.split("-")
        out: List[str] = []
        for i in range(len(segments) - 1, 0, -1):
            if _PLACEHOLDER_RE.search(segments[i]):
                out.append("-".join(segments[:i]) + "-")
        return out

    @staticmethod
    def _substitute(template: str, inputs: Mapping[str, object]) -> str:
        def repl(m: re.Match) -> str:
            name = m.group(1)
            if name not in inputs:
                raise CacheKeyError(
                    f"cache key template {template!r} references unknown input {name!r}. "
                    f"Known inputs: {sorted(inputs)}"
                )
            value = inputs[name]
            return "" if value is None else str(value)

        key = _PLACEHOLDER_RE.sub(repl, template)
        if "," in key:
            raise CacheKeyError(f"cache key may not contain ',': {key!r}")
        if len(key) > MAX_KEY_LENGTH:
            raise CacheKeyError(f"cache key longer than {MAX_KEY_LENGTH} characters: {key[:40]}...")
        return key


def cache_inputs(instance: JobInstance, root: str | Path = ".") -> Dict[str, str]:
    """The declared inputs a job's cache template may reference."""
    job = instance.job
    inputs: Dict[str, str] = {
        "os": job.runs_on,
        "job": job.name,
        "hash": hash_files(job.cache.hash_files, root) if job.cache else "",
    }
    for axis, value in instance.matrix:
        inputs[f"matrix.{axis}"] = str(value)
    for name, value in job.env.items():
        inputs[f"env.{name}"] = str(value)
    return inputs


# ---------------------------------------------------------------------
# Storage collaborator (local filesystem)
# ---------------------------------------------------------------------

def _tar_add_path(
    tar: tarfile.TarFile,
    repo_root: Path,
    src: Path,
    *,
    exclude_globs: List[str],
) -> None:
    """Add src (file/dir) into tar under its repo-relative path, skipping excluded paths."""
    src = src.resolve()
    if not src.exists():
        return

    files = [src] if src.is_file() else list(_iter_files_under(src))
    for f in files:
        rel = _relpath(f, repo_root)
        if _matches_any_glob(rel, exclude_globs):
            continue
        tar.add(str(f), arcname=rel, recursive=False)


class LocalCacheStore:
    """
    File-based cache store:
      root/
        <sha256(key)>.tar.gz
        <sha256(key)>.manifest.json   {"key": ..., "paths": [...], "created_at_unix": ...}
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _write_atomic(self, path: Path, text: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f"{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            Path(tmp_name).replace(path)
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{_sha256_str(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{_sha256_str(key)}.manifest.json"

    def _manifests(self) -> List[Dict]:
        out = []
        for man in self.root.glob("*.manifest.json"):
            try:
                data = json.loads(man.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            if isinstance(data, dict) and "key" in data:
                out.append(data)
        return out

    def get(self, key: str, restore_keys: Sequence[str] = ()) -> Optional[CacheEntry]:
        """Exact key first, then the newest entry for each restore prefix in order."""
        if self.artifact_path(key).exists() and self.manifest_path(key).exists():
            return CacheEntry(key=key, restore_keys=tuple(restore_keys), payload=self.artifact_path(key))

        manifests = self._manifests()
        for prefix in restore_keys:
            candidates = [m for m in manifests if m["key"].startswith(prefix)]
            candidates = [m for m in candidates if self.artifact_path(m["key"]).exists()]
            if candidates:
                newest = max(candidates, key=lambda m: m.get("created_at_unix", 0))
                return CacheEntry(
                    key=newest["key"],
                    restore_keys=tuple(restore_keys),
                    payload=self.artifact_path(newest["key"]),
                )
        return None

    def put(self, key: str, paths: Sequence[str], root: str | Path = ".") -> CacheEntry:
        """
        Archive `paths` (relative to root) under `key`. Missing paths are
        ignored; paths outside root are rejected.
        """
        repo_root = Path(root).resolve()
        art = self.artifact_path(key)
        # one temp file per writer: matrix siblings may save the same key at once
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f"{art.name}.", suffix=".tmp")
        os.close(fd)
        tmp = Path(tmp_name)
        manifest = {
            "key": key,
            "paths": list(paths),
            "created_at_unix": time.time(),
        }
        try:
            # Build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in paths:
                    src = (repo_root / Path(entry).expanduser()).resolve()
                    if repo_root != src and repo_root not in src.parents:
                        raise ValueError(f"cache path {entry!r} is outside {repo_root}")
                    _tar_add_path(tar, repo_root, src, exclude_globs=DEFAULT_CACHE_EXCLUDES)

                payload = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8")
                info = tarfile.TarInfo(name=".ciforge_cache_manifest.json")
                info.size = len(payload)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=io.BytesIO(payload))

            tmp.replace(art)
            self._write_atomic(self.manifest_path(key), json.dumps(manifest, sort_keys=True, indent=2))
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        return CacheEntry(key=key, payload=art)

    def restore(self, entry: CacheEntry, root: str | Path = ".") -> None:
        """Extract an entry's archive into root (overwrite by extraction)."""
        dest = Path(root).resolve()
        with tarfile.open(str(entry.payload), mode="r:gz") as tar:
            members = [m for m in tar.getmembers() if m.name != ".ciforge_cache_manifest.json"]
            if hasattr(tarfile, "data_filter"):
                tar.extractall(path=str(dest), members=members, filter="data")
            else:
                tar.extractall(path=str(dest), members=members)

    def prune(self, keep: int = 3) -> None:
        """Keep only the newest N archives (by manifest creation time)."""
        manifests = sorted(self._manifests(), key=lambda m: m.get("created_at_unix", 0), reverse=True)
        for m in manifests[keep:]:
            self.artifact_path(m["key"]).unlink(missing_ok=True)
            self.manifest_path(m["key"]).unlink(missing_ok=True)
