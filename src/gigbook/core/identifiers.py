"""Human-readable identifiers: proposal numbers, project codes, contract numbers."""

from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Callable
from datetime import datetime

from gigbook.storage.base import Collection, DocumentReader, DuplicateKeyError

logger = logging.getLogger(__name__)

PROPOSAL_PREFIX = "PROP"
PROJECT_PREFIX = "PRJ"
CONTRACT_PREFIX = "CTR"

_SUFFIX_ALPHABET = string.digits + string.ascii_uppercase
_SUFFIX_LENGTH = 4


def make_identifier(prefix: str, now: datetime) -> str:
    """``PREFIX-YYYYMMDD-HHMMSS-XXXX`` with a random base36 suffix."""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(_SUFFIX_LENGTH))
    return f"{prefix}-{now:%Y%m%d}-{now:%H%M%S}-{suffix}"


async def allocate(
    reader: DocumentReader,
    collection: Collection,
    field: str,
    factory: Callable[[], str],
    *,
    attempts: int = 5,
) -> str:
    """Draw identifiers from ``factory`` until one is unused in ``collection``.

    The unique index still has the final word at write time; exhausting the
    attempts raises DuplicateKeyError so the unit of work retries as a whole.
    """
    candidate = ""
    for attempt in range(1, attempts + 1):
        candidate = factory()
        if not await reader.find(collection, {field: candidate}, limit=1):
            return candidate
        logger.debug("Identifier %s taken (attempt %d/%d)", candidate, attempt, attempts)
    raise DuplicateKeyError(collection, field, candidate)
