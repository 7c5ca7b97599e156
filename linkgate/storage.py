import base64
import logging
from pathlib import Path
from typing import Iterator, Protocol

from linkgate.models import LinkRecord

logger = logging.getLogger(__name__)


def decode_reference(reference: str) -> str | None:
    """Decode a base64 file locator (standard or URL-safe alphabet, padding optional)."""
    padded = reference + "=" * (-len(reference) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_").decode("utf-8")
    except ValueError:
        return None


def is_safe_path(base_dir: Path, path: Path) -> bool:
    """Check that ``path`` resolves inside ``base_dir`` (no directory traversal)."""
    try:
        return path.resolve().is_relative_to(base_dir.resolve())
    except (ValueError, OSError):
        return False


class FileBackend(Protocol):
    def exists(self, record: LinkRecord) -> bool: ...

    def size(self, record: LinkRecord) -> int: ...

    def iter_chunks(self, record: LinkRecord, chunk_size: int) -> Iterator[bytes]: ...


class LocalFileBackend:
    """Serves files below a root directory on the local file system."""

    def __init__(self, root_dir: str):
        self.root = Path(root_dir)

    def resolve(self, record: LinkRecord) -> Path | None:
        relative = decode_reference(record.file_reference)
        if not relative or "\0" in relative:
            logger.warning("file_reference_invalid token=%s", record.token)
            return None
        root = Path(record.root_path) if record.root_path else self.root
        target = root / relative.lstrip("/")
        if not is_safe_path(root, target):
            logger.warning("file_reference_outside_root token=%s", record.token)
            return None
        return target

    def exists(self, record: LinkRecord) -> bool:
        target = self.resolve(record)
        return target is not None and target.is_file()

    def size(self, record: LinkRecord) -> int:
        target = self.resolve(record)
        if target is None:
            raise FileNotFoundError(record.file_reference)
        return target.stat().st_size

    def iter_chunks(self, record: LinkRecord, chunk_size: int) -> Iterator[bytes]:
        target = self.resolve(record)
        if target is None:
            raise FileNotFoundError(record.file_reference)
        with target.open("rb") as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                yield chunk
