"""Atomic unit of work with bounded retries."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from gigbook.config import Config
from gigbook.errors import ConcurrencyConflictError, ValidationError, Violation
from gigbook.events.bus import EventBus, Outbox
from gigbook.storage.base import (
    Collection,
    DocumentWriter,
    DuplicateKeyError,
    StorageBackend,
    StorageError,
    WriteConflictError,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")
Work = Callable[[DocumentWriter, Outbox], Awaitable[R]]

# Fields filled by the engine; a clash there means "draw again", not bad input
GENERATED_FIELDS = frozenset(
    {
        (Collection.PROPOSALS, "number"),
        (Collection.PROJECTS, "code"),
        (Collection.CONTRACTS, "number"),
    }
)


def _retriable(error: DuplicateKeyError) -> bool:
    return error.field == "id" or (error.collection, error.field) in GENERATED_FIELDS


class TransactionRunner:
    """Runs a unit of work inside one store transaction.

    ``work`` receives the transaction handle and an outbox. It must re-read
    whatever it validates through the handle. Conflicts roll the whole unit
    back and it is run again from scratch, with exponential backoff, until the
    attempt budget is spent. Outbox events are published only after commit.
    """

    def __init__(self, store: StorageBackend, event_bus: EventBus, config: Config) -> None:
        self.store = store
        self.event_bus = event_bus
        self.config = config

    async def run(self, work: Work[R], *, entity: str) -> R:
        attempts = self.config.max_commit_attempts
        reason = ""
        for attempt in range(1, attempts + 1):
            outbox = Outbox()
            try:
                async with self.store.transaction() as tx:
                    result = await work(tx, outbox)
            except WriteConflictError as e:
                reason = str(e)
            except DuplicateKeyError as e:
                if not _retriable(e):
                    raise ValidationError(
                        entity,
                        [Violation(e.field, "unique", f"{e.field} '{e.value}' is already in use")],
                    ) from e
                reason = str(e)
            except StorageError as e:
                logger.error("Storage failure while committing %s: %s", entity, e)
                raise ConcurrencyConflictError(entity, attempt, str(e)) from e
            else:
                await self.event_bus.publish(outbox)
                return result

            if attempt < attempts:
                delay = self.config.backoff_delay(attempt)
                logger.warning(
                    "Conflict committing %s (attempt %d/%d), retrying in %.3fs: %s",
                    entity,
                    attempt,
                    attempts,
                    delay,
                    reason,
                )
                await asyncio.sleep(delay)

        logger.warning("Giving up on %s after %d attempt(s): %s", entity, attempts, reason)
        raise ConcurrencyConflictError(entity, attempts, reason)
