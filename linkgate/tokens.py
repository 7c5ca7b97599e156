import logging
import secrets
from typing import Callable

from linkgate.errors import TokenExhaustion
from linkgate.models import LinkRecord
from linkgate.repository import LinkRepository

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 10


def generate_token(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


class TokenMinter:
    def __init__(
        self,
        repository: LinkRepository,
        *,
        generator: Callable[[], str] = generate_token,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.repository = repository
        self.generator = generator
        self.max_attempts = max_attempts

    def mint(self, build: Callable[[str], LinkRecord]) -> LinkRecord:
        """Persist ``build(candidate)`` under a fresh token, retrying on collisions."""
        for attempt in range(1, self.max_attempts + 1):
            candidate = self.generator()
            record = build(candidate)
            if self.repository.create(record):
                return record
            logger.warning("token_collision attempt=%s/%s", attempt, self.max_attempts)
        logger.error("token_exhaustion attempts=%s", self.max_attempts)
        raise TokenExhaustion(f"no unique token after {self.max_attempts} attempts")
