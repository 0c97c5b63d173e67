"""Crash-safe JSON persistence: atomic writes and a debounced, retrying writer."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger("tsk.persistence")

# Seconds between retries of a failed write; the last value repeats
DEFAULT_RETRY_DELAYS: tuple[float, ...] = (0.5, 1.0, 2.0, 5.0, 10.0, 30.0)

OWNER_ONLY = 0o600


def atomic_write_json(path: Path, data: Any) -> None:
    """Write data as JSON so that readers never see a partial file.

    Writes a temp file in the destination directory, restricts it to the
    owner, renames it over the destination and re-asserts permissions. On
    failure the temp file is removed, the destination is left untouched and
    the error propagates.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(data, indent=2, ensure_ascii=False)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.tmp-")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, OWNER_ONLY)
        os.replace(tmp_path, path)
        os.chmod(path, OWNER_ONLY)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def quarantine_file(path: Path) -> Path:
    """Move an unreadable file aside to a timestamped .invalid.*.bak sidecar."""
    stamp = datetime.now().strftime("%Y%m%dT%H%M%S%f")
    backup = path.with_name(f"{path.name}.invalid.{stamp}.bak")
    os.replace(path, backup)
    logger.error("Invalid data in %s, moved to %s", path, backup)
    return backup


class DebouncedWriter:
    """Coalesces bursts of saves into one atomic write.

    schedule() (re)starts a short timer; flush() cancels it and writes inline.
    A failed write keeps the last good file, exposes `error` and `pending`,
    and retries on a backoff schedule until a write succeeds or a newer
    schedule()/flush() supersedes it.
    """

    def __init__(
        self,
        path: Path,
        serialize: Callable[[], Any],
        delay: float = 0.3,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
    ):
        self._path = path
        self._serialize = serialize
        self._delay = delay
        self._retry_delays = tuple(retry_delays) or DEFAULT_RETRY_DELAYS
        self._lock = threading.RLock()
        self._timer: threading.Timer | None = None
        self._generation = 0
        self._attempt = 0
        self._closed = False
        self.error: str | None = None
        self.pending = False

    @property
    def path(self) -> Path:
        return self._path

    def schedule(self) -> None:
        """Request a write after the debounce delay."""
        with self._lock:
            self._generation += 1
            self.pending = True
            self._cancel_timer()
            if not self._closed:
                self._start_timer(self._delay, self._generation)

    def flush(self) -> bool:
        """Write now, superseding any pending debounce or retry.

        Returns True if the data is durably on disk.
        """
        with self._lock:
            self._generation += 1
            self._cancel_timer()
            return self._write(self._generation)

    def close(self) -> None:
        """Stop background timers. Unsaved changes stay pending."""
        with self._lock:
            self._closed = True
            self._cancel_timer()

    # Private helpers

    def _start_timer(self, delay: float, generation: int) -> None:
        timer = threading.Timer(delay, self._fire, args=(generation,))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, generation: int) -> None:
        with self._lock:
            if self._closed or generation != self._generation:
                return  # superseded
            self._timer = None
            try:
                self._write(generation)
            except Exception:
                # Nothing above the timer thread would see this
                logger.exception("Unexpected error saving %s", self._path)
                self.error = "unexpected error while saving"

    def _write(self, generation: int) -> bool:
        try:
            atomic_write_json(self._path, self._serialize())
        except OSError as e:
            self.error = f"{type(e).__name__}: {e}"
            self.pending = True
            delay = self._retry_delays[min(self._attempt, len(self._retry_delays) - 1)]
            self._attempt += 1
            logger.warning(
                "Saving %s failed (attempt %d), retrying in %.1fs: %s",
                self._path,
                self._attempt,
                delay,
                e,
            )
            if not self._closed:
                self._start_timer(delay, generation)
            return False

        if self.error is not None:
            logger.info("Saving %s recovered after %d failed attempt(s)", self._path, self._attempt)
        self.error = None
        self.pending = False
        self._attempt = 0
        return True
