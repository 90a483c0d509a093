# history.py
from __future__ import annotations

import hashlib
import json
import re
import threading
from pathlib import Path
from typing import Dict, List, Optional

from . import settings
from .model import PipelineRun


# ---------------------------------------------------------------------
# Bounded run history
# ---------------------------------------------------------------------
# Runs are retained per pipeline identity and evicted FIFO by build
# number once more than `keep` are stored. A retention of 0 keeps nothing.
# ---------------------------------------------------------------------


class RunHistory:
    """In-memory run history."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, Dict[int, PipelineRun]] = {}

    def record(self, run: PipelineRun, *, keep: int) -> List[int]:
        """
        Store a finalized run, then prune. Returns the evicted build numbers.
        """
        if not run.finalized:
            raise ValueError(f"run #{run.build_number} of {run.pipeline!r} is not finalized")
        with self._lock:
            runs = self._runs.setdefault(run.pipeline, {})
            runs[run.build_number] = run
            return self._prune_locked(run.pipeline, keep)

    def prune(self, pipeline: str, keep: int) -> List[int]:
        with self._lock:
            return self._prune_locked(pipeline, keep)

    def _prune_locked(self, pipeline: str, keep: int) -> List[int]:
        runs = self._runs.get(pipeline, {})
        ordered = sorted(runs)
        evicted = ordered[: max(0, len(ordered) - keep)]
        for n in evicted:
            del runs[n]
        return evicted

    def list(self, pipeline: str) -> List[PipelineRun]:
        """Retained runs, oldest first."""
        with self._lock:
            runs = self._runs.get(pipeline, {})
            return [runs[n] for n in sorted(runs)]

    def get(self, pipeline: str, build_number: int) -> Optional[PipelineRun]:
        with self._lock:
            return self._runs.get(pipeline, {}).get(build_number)

    def pipelines(self) -> List[str]:
        with self._lock:
            return sorted(self._runs)


def _dir_name(name: str) -> str:
    """
    Directory for a pipeline identity. Names that are already path-safe are
    used as-is; anything rewritten gets a digest of the original name so
    distinct identities ("app/x", "app_x") never share a directory.
    """
    safe = re.sub(r"[^A-Za-z0-9._-]+", "_", name)
    if safe == name and safe not in ("", ".", ".."):
        return safe
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:12]
    return f"{safe}-{digest}"


class FileRunHistory(RunHistory):
    """
    File-based run history:
      root/
        <pipeline>/          (path-unsafe names get a -<sha256 prefix> suffix)
          <build_number>.json
    """

    def __init__(self, root: str | Path = settings.HISTORY_DIR):
        super().__init__()
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _pipeline_dir(self, pipeline: str) -> Path:
        d = self.root / _dir_name(pipeline)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def run_path(self, pipeline: str, build_number: int) -> Path:
        return self._pipeline_dir(pipeline) / f"{build_number}.json"

    def _build_numbers(self, pipeline: str) -> List[int]:
        d = self.root / _dir_name(pipeline)
        if not d.is_dir():
            return []
        return sorted(int(p.stem) for p in d.glob("*.json") if p.stem.isdigit())

    def record(self, run: PipelineRun, *, keep: int) -> List[int]:
        if not run.finalized:
            raise ValueError(f"run #{run.build_number} of {run.pipeline!r} is not finalized")
        with self._lock:
            path = self.run_path(run.pipeline, run.build_number)
            tmp = path.with_suffix(".json.tmp")
            try:
                # write tmp, then atomic rename
                tmp.write_text(json.dumps(run.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
                tmp.replace(path)
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)
            return self._prune_locked(run.pipeline, keep)

    def _prune_locked(self, pipeline: str, keep: int) -> List[int]:
        ordered = self._build_numbers(pipeline)
        evicted = ordered[: max(0, len(ordered) - keep)]
        for n in evicted:
            self.run_path(pipeline, n).unlink(missing_ok=True)
        return evicted

    def list(self, pipeline: str) -> List[PipelineRun]:
        with self._lock:
            runs = (self._load(pipeline, n) for n in self._build_numbers(pipeline))
            return [r for r in runs if r.pipeline == pipeline]

    def get(self, pipeline: str, build_number: int) -> Optional[PipelineRun]:
        with self._lock:
            if not (self.root / _dir_name(pipeline) / f"{build_number}.json").exists():
                return None
            run = self._load(pipeline, build_number)
            return run if run.pipeline == pipeline else None

    def _load(self, pipeline: str, build_number: int) -> PipelineRun:
        data = json.loads(self.run_path(pipeline, build_number).read_text(encoding="utf-8"))
        return PipelineRun.from_dict(data)

    def pipelines(self) -> List[str]:
        with self._lock:
            names = []
            for d in sorted(self.root.iterdir()):
                if d.is_dir() and any(d.glob("*.json")):
                    first = min(d.glob("*.json"))
                    data = json.loads(first.read_text(encoding="utf-8"))
                    names.append(data["pipeline"])
            return sorted(names)
