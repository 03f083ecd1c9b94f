"""Rollback checkpoint for the filesystem changes a plan run makes.

The store records two kinds of deltas:

- created files: paths that did not exist and were written by some step;
- modified files: paths that existed, with their original bytes captured before the first
  write of the run.

A path lives in at most one of the two lists and is recorded at most once per run. A file
created earlier in the run and then overwritten by a later step stays a created file: its
"original" state is absence.

Originals are kept as raw bytes, so line endings and non-UTF-8 content survive a
rollback unchanged. In the checkpoint JSON an original that decodes as UTF-8 is written as
`original` text; anything else is written base64-encoded under `originalBase64`.

Paths are stored relative to the project root when they are inside it, so a checkpoint
file stays valid if the project directory moves. The checkpoint is saved to
`checkpoint_path` after every mutation so `rollback()` also works from a fresh process via
`CheckpointStore.load()`.

Concurrency
Steps of one wave call `track_creation` / `track_modification` from worker threads. All
bookkeeping, the checkpoint write and the filesystem work in `rollback()` happen under a
single lock.

Rollback order
Created files are deleted first, pruning parent directories that become empty (stopping at
the project root, which is never removed). Modified files are then restored. Finally the
tracked state and the checkpoint file are cleared, so a second `rollback()` is a no-op.
"""

from __future__ import annotations

import base64
import binascii
import json
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class ModifiedFile:
    path: str
    original: bytes

    def to_dict(self) -> dict[str, str]:
        try:
            return {"path": self.path, "original": self.original.decode("utf-8")}
        except UnicodeDecodeError:
            return {"path": self.path, "originalBase64": base64.b64encode(self.original).decode("ascii")}

    @staticmethod
    def from_dict(d: Any) -> "ModifiedFile":
        if not isinstance(d, dict) or "path" not in d:
            raise ValueError(f"rollback checkpoint has a malformed modifiedFiles entry: {d!r}")
        if "originalBase64" in d:
            try:
                original = base64.b64decode(str(d["originalBase64"]), validate=True)
            except binascii.Error as exc:
                raise ValueError(f"rollback checkpoint has invalid originalBase64 for {d['path']!r}: {exc}") from exc
        elif "original" in d:
            original = str(d["original"]).encode("utf-8")
        else:
            raise ValueError(f"rollback checkpoint has a malformed modifiedFiles entry: {d!r}")
        return ModifiedFile(path=str(d["path"]), original=original)


class CheckpointStore:
    def __init__(self, *, project_root: Path, checkpoint_path: Path | None = None, plan_id: str | None = None) -> None:
        self.project_root = project_root.resolve()
        self.checkpoint_path = checkpoint_path
        self.plan_id = plan_id
        self._created: list[str] = []
        self._modified: list[ModifiedFile] = []
        self._lock = threading.Lock()

    @property
    def created_files(self) -> list[str]:
        with self._lock:
            return list(self._created)

    @property
    def modified_files(self) -> list[ModifiedFile]:
        with self._lock:
            return list(self._modified)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._created and not self._modified

    def _key(self, path: Path | str) -> str:
        p = Path(path)
        if not p.is_absolute():
            p = self.project_root / p
        p = p.resolve()
        try:
            return p.relative_to(self.project_root).as_posix()
        except ValueError:
            return str(p)

    def _abs(self, key: str) -> Path:
        p = Path(key)
        return p if p.is_absolute() else self.project_root / p

    def _is_tracked(self, key: str) -> bool:
        return key in self._created or any(m.path == key for m in self._modified)

    def track_creation(self, path: Path | str) -> bool:
        """Record a file created by this run. Returns False if the path is already tracked."""
        key = self._key(path)
        with self._lock:
            if self._is_tracked(key):
                return False
            self._created.append(key)
            self._save_locked()
        return True

    def track_modification(self, path: Path | str) -> bool:
        """Capture the original bytes of an existing file before its first write this run.

        Returns False when the path is already tracked (as created or modified) or does not
        exist; callers write the file after this returns either way.
        """
        key = self._key(path)
        with self._lock:
            if self._is_tracked(key):
                return False
            target = self._abs(key)
            if not target.exists():
                return False
            self._modified.append(ModifiedFile(path=key, original=target.read_bytes()))
            self._save_locked()
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "planId": self.plan_id,
            "createdFiles": list(self._created),
            "modifiedFiles": [m.to_dict() for m in self._modified],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def save(self) -> None:
        with self._lock:
            self._save_locked()

    def _save_locked(self) -> None:
        if self.checkpoint_path is None:
            return
        self.checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.checkpoint_path.with_suffix(self.checkpoint_path.suffix + ".tmp")
        tmp.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=True) + "\n", encoding="utf-8")
        tmp.replace(self.checkpoint_path)

    @staticmethod
    def load(*, project_root: Path, checkpoint_path: Path) -> "CheckpointStore | None":
        if not checkpoint_path.exists():
            return None
        raw = json.loads(checkpoint_path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"rollback checkpoint must be a JSON object: {checkpoint_path}")

        plan_id = raw.get("planId")
        store = CheckpointStore(
            project_root=project_root,
            checkpoint_path=checkpoint_path,
            plan_id=(str(plan_id) if plan_id is not None else None),
        )
        store._created = [str(p) for p in (raw.get("createdFiles") or [])]
        store._modified = [ModifiedFile.from_dict(m) for m in (raw.get("modifiedFiles") or [])]
        return store

    def rollback(self) -> None:
        with self._lock:
            if not self._created and not self._modified:
                self._remove_checkpoint_file()
                return
            print("[wavefront] rolling back changes...", file=sys.stderr)

            for key in self._created:
                target = self._abs(key)
                if not target.exists():
                    continue
                target.unlink()
                print(f"[wavefront]   deleted: {key}", file=sys.stderr)
                self._prune_empty_parents(target.parent)

            for m in self._modified:
                target = self._abs(m.path)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(m.original)
                print(f"[wavefront]   restored: {m.path}", file=sys.stderr)

            self._created = []
            self._modified = []
            self._remove_checkpoint_file()
            print("[wavefront] rollback complete", file=sys.stderr)

    def clear(self) -> None:
        with self._lock:
            self._created = []
            self._modified = []
            self._remove_checkpoint_file()

    def _prune_empty_parents(self, directory: Path) -> None:
        root = self.project_root
        d = directory.resolve()
        while d != root and root in d.parents and d.is_dir():
            if any(d.iterdir()):
                break
            d.rmdir()
            print(f"[wavefront]   removed empty dir: {self._key(d)}", file=sys.stderr)
            d = d.parent

    def _remove_checkpoint_file(self) -> None:
        if self.checkpoint_path is not None and self.checkpoint_path.exists():
            self.checkpoint_path.unlink()
