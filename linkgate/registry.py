import logging
import time
from typing import Callable

from linkgate.config import Settings
from linkgate.errors import NotFound, PermissionDenied, StorageError
from linkgate.models import ConfigResponse, CreateLinkRequest, LinkRecord, LinkSummary, Owner
from linkgate.policy import build_policy
from linkgate.repository import LinkRepository, is_valid_token
from linkgate.tokens import TokenMinter

logger = logging.getLogger(__name__)


class LinkRegistry:
    """Create, list and delete links on behalf of their owners."""

    def __init__(
        self,
        repository: LinkRepository,
        minter: TokenMinter,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.repository = repository
        self.minter = minter
        self.settings = settings
        self.clock = clock

    def get_config(self) -> ConfigResponse:
        return ConfigResponse(
            expiration_minutes=list(self.settings.allowed_expiration_minutes),
            wait_seconds=list(self.settings.allowed_wait_seconds),
            default_auto_delete=self.settings.default_auto_delete,
            max_downloads_ceiling=self.settings.max_downloads_ceiling,
            registered_links_enabled=self.settings.auth_enabled,
        )

    def create_link(self, owner: Owner, request: CreateLinkRequest) -> LinkRecord:
        policy = build_policy(request, self.settings)
        created_at = int(self.clock())

        def build(token: str) -> LinkRecord:
            return LinkRecord(
                token=token,
                owner_id=owner.id,
                owner_name=owner.name,
                file_reference=policy.file_reference,
                root_path=self.settings.files_root,
                file_name=policy.file_name,
                file_size=policy.file_size,
                access_type=policy.access_type,
                wait_seconds=policy.wait_seconds,
                max_downloads=policy.max_downloads,
                download_count=0,
                created_at=created_at,
                expires_at=created_at + policy.expiration_minutes * 60,
                last_download_at=None,
                auto_delete_on_expiry=policy.auto_delete_on_expiry,
            )

        record = self.minter.mint(build)
        logger.info("link_created token=%s owner=%s file=%s", record.token, owner.id, record.file_name)

        self.sweep_expired()
        return record

    def list_links(self, owner_id: str) -> list[LinkSummary]:
        now = self.clock()
        links = []
        for record in self.repository.list_records():
            if record.owner_id != owner_id:
                continue
            if record.is_expired(now) and record.auto_delete_on_expiry:
                self._discard(record)
                continue
            links.append(LinkSummary.from_record(record, now))

        # Newest first, token as tie breaker so the order is stable.
        links.sort(key=lambda link: link.token)
        links.sort(key=lambda link: link.created_at, reverse=True)
        return links

    def delete_link(self, owner_id: str, token: str) -> None:
        if not is_valid_token(token):
            raise NotFound("link not found")
        record = self.repository.get(token)
        if record is None:
            raise NotFound("link not found")
        if record.owner_id != owner_id:
            logger.warning("link_delete_denied token=%s owner=%s caller=%s", token, record.owner_id, owner_id)
            raise PermissionDenied("permission denied")
        if not self.repository.delete(token):
            raise NotFound("link not found")
        logger.info("link_deleted token=%s owner=%s", token, owner_id)

    def sweep_expired(self) -> int:
        """Delete expired links flagged for auto deletion. Returns how many were removed."""
        now = self.clock()
        cleaned = 0
        for record in self.repository.list_records():
            if record.auto_delete_on_expiry and record.is_expired(now) and self._discard(record):
                cleaned += 1
        if cleaned:
            logger.info("sweep_summary cleaned=%s", cleaned)
        return cleaned

    def _discard(self, record: LinkRecord) -> bool:
        try:
            return self.repository.delete(record.token)
        except StorageError as exc:
            logger.warning("link_discard_failed token=%s err=%s", record.token, exc)
            return False
