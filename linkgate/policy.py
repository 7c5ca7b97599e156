"""Validation of client-supplied link policy against the server allow-lists.

Out-of-list expiration and wait values fall back to the first allow-list entry
unless ``strict`` is set, in which case they are rejected with InvalidInput.
"""

import logging
from typing import Sequence

from linkgate.config import Settings
from linkgate.errors import InvalidInput
from linkgate.models import AccessType, CreateLinkRequest, LinkPolicy

logger = logging.getLogger(__name__)

MAX_DOWNLOADS_CEILING = 1000


def _pick_allowed(requested: int | None, allowed: Sequence[int], label: str, strict: bool) -> int:
    if requested is not None and requested in allowed:
        return requested
    if requested is not None and strict:
        raise InvalidInput(f"{label} must be one of {list(allowed)}")
    if requested is not None:
        logger.info("policy_fallback field=%s requested=%s used=%s", label, requested, allowed[0])
    return allowed[0]


def validate_expiration(requested_minutes: int | None, allowed: Sequence[int], strict: bool = False) -> int:
    return _pick_allowed(requested_minutes, allowed, "expiration_minutes", strict)


def validate_wait(requested_seconds: int | None, allowed: Sequence[int], strict: bool = False) -> int:
    return _pick_allowed(requested_seconds, allowed, "wait_seconds", strict)


def validate_access_type(value: str) -> AccessType:
    try:
        return AccessType(str(value).strip().lower())
    except ValueError:
        raise InvalidInput(f"unknown link type: {value!r}") from None


def clamp_max_downloads(value: int, ceiling: int = MAX_DOWNLOADS_CEILING) -> int:
    if value < 0:
        return 0
    if value > ceiling:
        logger.warning("max_downloads_clamped requested=%s ceiling=%s", value, ceiling)
        return ceiling
    return value


def build_policy(request: CreateLinkRequest, settings: Settings) -> LinkPolicy:
    if not request.file_hash.strip() or not request.file_name.strip():
        raise InvalidInput("invalid file data")
    if request.file_size < 0:
        raise InvalidInput("file_size must not be negative")

    auto_delete = request.cancel_json_file
    if auto_delete is None:
        auto_delete = settings.default_auto_delete

    return LinkPolicy(
        file_reference=request.file_hash.strip(),
        file_name=request.file_name,
        file_size=request.file_size,
        access_type=validate_access_type(request.link_type),
        expiration_minutes=validate_expiration(
            request.expiration_minutes, settings.allowed_expiration_minutes, settings.strict_policy
        ),
        wait_seconds=validate_wait(request.wait_seconds, settings.allowed_wait_seconds, settings.strict_policy),
        max_downloads=clamp_max_downloads(request.max_downloads, settings.max_downloads_ceiling),
        auto_delete_on_expiry=auto_delete,
    )
