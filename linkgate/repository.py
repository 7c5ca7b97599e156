import logging
import os
import re
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from linkgate.errors import StorageError
from linkgate.models import LinkRecord

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"[A-Za-z0-9_-]{16,128}")
LOCK_POLL_SECONDS = 0.01
STALE_LOCK_SECONDS = 30.0


def is_valid_token(token: str) -> bool:
    return bool(token) and TOKEN_PATTERN.fullmatch(token) is not None


class LinkRepository:
    """One JSON document per token under ``links_dir``.

    Creation is an atomic create-if-absent (hard link of a fully written temp
    file). Updates and deletes for a token are serialized by a per-token thread
    lock plus a ``<token>.lock`` file, so other worker processes sharing the
    directory serialize as well.
    """

    def __init__(self, links_dir: str, lock_timeout: float = 5.0, stale_lock_seconds: float = STALE_LOCK_SECONDS):
        self.root = Path(links_dir)
        self.lock_timeout = lock_timeout
        self.stale_lock_seconds = stale_lock_seconds
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def init(self) -> None:
        self.root.mkdir(mode=0o750, parents=True, exist_ok=True)

    def _path(self, token: str) -> Path:
        return self.root / f"{token}.json"

    def _write_temp(self, record: LinkRecord) -> Path:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{record.token}.", suffix=".tmp", dir=self.root)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(record.to_json())
                fh.flush()
                os.fsync(fh.fileno())
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        return tmp_path

    def _load(self, path: Path) -> LinkRecord | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("link_unreadable file=%s err=%s", path.name, exc)
            return None
        try:
            return LinkRecord.from_json(raw)
        except ValueError as exc:
            logger.warning("link_corrupt file=%s err=%s", path.name, exc)
            return None

    # -----------------------------
    # Locking
    # -----------------------------

    def _thread_lock(self, token: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(token, threading.Lock())

    def _break_stale_lock(self, lock_path: Path) -> bool:
        """Remove ``lock_path`` if it is stale. Returns True when the caller may retry at once.

        The lock is first renamed to a private name, so only one waiter can claim
        it. If the claimed file is not the one judged stale, another waiter has
        already broken it and re-locked; that lock is linked back into place.
        """
        try:
            seen = lock_path.stat()
        except FileNotFoundError:
            return True
        age = time.time() - seen.st_mtime
        if age <= self.stale_lock_seconds:
            return False

        claimed = lock_path.with_name(f"{lock_path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(lock_path, claimed)
        except FileNotFoundError:
            return True
        except OSError as exc:
            raise StorageError(f"could not break {lock_path.name}: {exc}") from exc
        try:
            taken = claimed.stat()
            if (taken.st_ino, taken.st_mtime_ns) != (seen.st_ino, seen.st_mtime_ns):
                try:
                    os.link(claimed, lock_path)
                except FileExistsError:
                    logger.warning("link_lock_restore_failed file=%s", lock_path.name)
                return False
            logger.warning("link_lock_stale file=%s age=%.1fs", lock_path.name, age)
            return True
        finally:
            claimed.unlink(missing_ok=True)

    def _acquire_file_lock(self, lock_path: Path) -> None:
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o640)
            except FileExistsError:
                if self._break_stale_lock(lock_path):
                    continue
                if time.monotonic() >= deadline:
                    raise StorageError(f"timed out waiting for {lock_path.name}")
                time.sleep(LOCK_POLL_SECONDS)
                continue
            except OSError as exc:
                raise StorageError(f"could not lock {lock_path.name}: {exc}") from exc
            with os.fdopen(fd, "w") as fh:
                fh.write(str(os.getpid()))
            return

    @contextmanager
    def _locked(self, token: str) -> Iterator[None]:
        thread_lock = self._thread_lock(token)
        if not thread_lock.acquire(timeout=self.lock_timeout):
            raise StorageError(f"timed out waiting for lock on link {token}")
        try:
            lock_path = self.root / f"{token}.lock"
            self._acquire_file_lock(lock_path)
            try:
                yield
            finally:
                lock_path.unlink(missing_ok=True)
        finally:
            thread_lock.release()

    # -----------------------------
    # Record operations
    # -----------------------------

    def create(self, record: LinkRecord) -> bool:
        """Persist ``record`` unless its token is taken. Returns False on a collision."""
        if not is_valid_token(record.token):
            raise ValueError(f"malformed token: {record.token!r}")
        try:
            tmp_path = self._write_temp(record)
        except OSError as exc:
            raise StorageError(f"could not write link {record.token}: {exc}") from exc
        try:
            os.link(tmp_path, self._path(record.token))
        except FileExistsError:
            return False
        except OSError as exc:
            raise StorageError(f"could not create link {record.token}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return True

    def get(self, token: str) -> LinkRecord | None:
        if not is_valid_token(token):
            return None
        return self._load(self._path(token))

    def update(self, token: str, mutator: Callable[[LinkRecord], LinkRecord]) -> LinkRecord | None:
        """Read-modify-write under the token lock. Returns None if the link is gone."""
        if not is_valid_token(token):
            return None
        with self._locked(token):
            record = self._load(self._path(token))
            if record is None:
                return None
            updated = mutator(record)
            if updated.token != token:
                raise ValueError("token is immutable")
            try:
                tmp_path = self._write_temp(updated)
            except OSError as exc:
                raise StorageError(f"could not write link {token}: {exc}") from exc
            try:
                os.replace(tmp_path, self._path(token))
            except OSError as exc:
                tmp_path.unlink(missing_ok=True)
                raise StorageError(f"could not update link {token}: {exc}") from exc
            return updated

    def delete(self, token: str) -> bool:
        if not is_valid_token(token):
            return False
        with self._locked(token):
            try:
                self._path(token).unlink()
            except FileNotFoundError:
                return False
            except OSError as exc:
                raise StorageError(f"could not delete link {token}: {exc}") from exc
        with self._locks_guard:
            self._locks.pop(token, None)
        return True

    def list_records(self) -> list[LinkRecord]:
        """Point-in-time snapshot. Unreadable or corrupt documents are skipped."""
        records = []
        for path in sorted(self.root.glob("*.json")):
            record = self._load(path)
            if record is None:
                continue
            if record.token != path.stem:
                logger.warning("link_token_mismatch file=%s token=%s", path.name, record.token)
                continue
            records.append(record)
        return records
