"""Per-request redemption checks for a link token.

A browser first views a token, which stamps a wait marker into its session, and
may only download once ``wait_seconds`` have passed since that stamp. Checks run
in a fixed order and the first failing one wins: unknown token, expiry, download
limit, access type, wait, access type again, missing file.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, MutableMapping

from linkgate.errors import (
    AuthRequired,
    CounterUpdateFailed,
    Expired,
    FileMissing,
    LimitReached,
    NotFound,
    StorageError,
    WaitNotElapsed,
)
from linkgate.models import AccessType, LinkRecord, LinkStatus
from linkgate.repository import LinkRepository
from linkgate.storage import FileBackend

logger = logging.getLogger(__name__)

WAIT_KEY_PREFIX = "wait_"
MAX_WAIT_MARKERS = 20
WAIT_MARKER_TTL_SECONDS = 3600


def wait_key(token: str) -> str:
    return f"{WAIT_KEY_PREFIX}{token}"


@dataclass
class DownloadTicket:
    """An authorized download holding one in-flight slot until finished."""

    record: LinkRecord
    size: int
    finished: bool = False

    @property
    def token(self) -> str:
        return self.record.token


class RedemptionGate:
    def __init__(
        self,
        repository: LinkRepository,
        backend: FileBackend,
        *,
        auth_enabled: bool = False,
        clock: Callable[[], float] = time.time,
        max_markers: int = MAX_WAIT_MARKERS,
        marker_ttl: float = WAIT_MARKER_TTL_SECONDS,
    ):
        self.repository = repository
        self.backend = backend
        self.auth_enabled = auth_enabled
        self.clock = clock
        self.max_markers = max(1, max_markers)
        self.marker_ttl = marker_ttl
        self._in_flight: dict[str, int] = {}
        self._lock = threading.Lock()

    def _require_access(self, record: LinkRecord, authenticated: bool) -> None:
        if record.access_type is not AccessType.REGISTERED:
            return
        if not self.auth_enabled:
            raise AuthRequired("this link requires authentication, but authentication is not enabled on this server")
        if not authenticated:
            raise AuthRequired("this link requires login")

    def _load_checked(self, token: str, authenticated: bool, now: float) -> LinkRecord:
        record = self.repository.get(token)
        if record is None:
            raise NotFound("link not found or expired")
        if record.is_expired(now):
            raise Expired("link has expired")
        if record.limit_reached():
            raise LimitReached(f"download limit reached ({record.max_downloads} downloads)")
        self._require_access(record, authenticated)
        return record

    def view(self, token: str, session: MutableMapping[str, Any], authenticated: bool = False) -> LinkStatus:
        """First contact: stamp the wait marker and describe the link."""
        now = self.clock()
        record = self._load_checked(token, authenticated, now)
        key = wait_key(token)
        session.pop(key, None)
        self._prune_markers(session, now, keep=self.max_markers - 1)
        session[key] = now
        return LinkStatus(
            token=record.token,
            file_name=record.file_name,
            file_size=record.file_size,
            access_type=record.access_type,
            download_count=record.download_count,
            max_downloads=record.max_downloads,
            wait_seconds=record.wait_seconds,
            wait_remaining=record.wait_seconds,
            expires_at=record.expires_at,
        )

    def _prune_markers(self, session: MutableMapping[str, Any], now: float, keep: int) -> None:
        """Drop expired wait markers, then all but the ``keep`` most recent ones.

        Sessions live in a signed cookie, which browsers discard past 4 KB.
        """
        markers = []
        stale = []
        for position, (key, stamp) in enumerate(list(session.items())):
            if not key.startswith(WAIT_KEY_PREFIX):
                continue
            if not isinstance(stamp, (int, float)) or now - stamp > self.marker_ttl:
                stale.append(key)
            else:
                markers.append((stamp, position, key))
        markers.sort(reverse=True)
        stale.extend(key for _, _, key in markers[keep:])
        for key in stale:
            del session[key]
        if stale:
            logger.debug("wait_markers_pruned count=%s", len(stale))

    def authorize(
        self, token: str, session: MutableMapping[str, Any], authenticated: bool = False
    ) -> DownloadTicket:
        """Run every check for a download and reserve a slot against the limit."""
        now = self.clock()
        record = self._load_checked(token, authenticated, now)

        started = session.get(wait_key(token))
        if not isinstance(started, (int, float)) or now - started < record.wait_seconds:
            raise WaitNotElapsed("please wait the required time before downloading")

        # The session may have lapsed between view and download.
        self._require_access(record, authenticated)

        if not self.backend.exists(record):
            logger.warning("file_missing token=%s file=%s", token, record.file_name)
            raise FileMissing("file not found on server")
        try:
            size = self.backend.size(record)
        except OSError as exc:
            logger.warning("file_missing token=%s file=%s err=%s", token, record.file_name, exc)
            raise FileMissing("file not found on server") from exc

        self._reserve(token)
        return DownloadTicket(record=record, size=size)

    def _reserve(self, token: str) -> None:
        with self._lock:
            current = self.repository.get(token)
            if current is None:
                raise NotFound("link not found or expired")
            in_flight = self._in_flight.get(token, 0)
            if current.max_downloads > 0 and current.download_count + in_flight >= current.max_downloads:
                raise LimitReached(f"download limit reached ({current.max_downloads} downloads)")
            self._in_flight[token] = in_flight + 1

    def _release(self, token: str) -> None:
        with self._lock:
            remaining = self._in_flight.get(token, 0) - 1
            if remaining > 0:
                self._in_flight[token] = remaining
            else:
                self._in_flight.pop(token, None)

    def in_flight(self, token: str) -> int:
        with self._lock:
            return self._in_flight.get(token, 0)

    def record_download(self, ticket: DownloadTicket) -> LinkRecord:
        downloaded_at = int(self.clock())

        def bump(record: LinkRecord) -> LinkRecord:
            return record.model_copy(
                update={"download_count": record.download_count + 1, "last_download_at": downloaded_at}
            )

        try:
            updated = self.repository.update(ticket.token, bump)
        except StorageError as exc:
            raise CounterUpdateFailed(str(exc)) from exc
        if updated is None:
            raise CounterUpdateFailed(f"link {ticket.token} disappeared before its counter was updated")
        logger.info("download_recorded token=%s count=%s", ticket.token, updated.download_count)
        return updated

    def finish(self, ticket: DownloadTicket, completed: bool) -> None:
        """Count a completed stream and give back the slot. Never raises for bookkeeping failures."""
        with self._lock:
            if ticket.finished:
                return
            ticket.finished = True
        try:
            if completed:
                self.record_download(ticket)
            else:
                logger.info("download_abandoned token=%s", ticket.token)
        except CounterUpdateFailed as exc:
            logger.warning("counter_update_failed token=%s err=%s", ticket.token, exc)
        finally:
            self._release(ticket.token)
