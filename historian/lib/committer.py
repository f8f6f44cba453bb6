"""Watermark commit gated on batch durability."""

from __future__ import annotations

import logging
from typing import Protocol

from historian.lib.errors import BatchNotDurableError
from historian.lib.models import BatchToken, Position, WatermarkRecord
from historian.lib.watermark import WatermarkStore

logger = logging.getLogger(__name__)

__all__ = ["DurableTarget", "WatermarkCommitter"]


class DurableTarget(Protocol):
    """A table that can say whether a batch was durably applied."""

    name: str

    def is_batch_applied(self, batch_id: str) -> bool: ...


class WatermarkCommitter:
    """Advances a watermark only for batches the target table has applied.

    A batch counts as processed only once this commit succeeds. If the
    process dies between apply and commit, the old watermark makes the
    next run re-extract the batch; merge idempotence absorbs the replay.
    """

    def __init__(self, store: WatermarkStore, target: DurableTarget) -> None:
        self.store = store
        self.target = target

    def commit(self, token: BatchToken, position: Position) -> WatermarkRecord:
        """Commit ``position`` for the batch identified by ``token``.

        Raises:
            BatchNotDurableError: If the target has not applied the batch
            StaleWatermarkError: If the watermark moved since extraction
        """
        if not self.target.is_batch_applied(token.batch_id):
            raise BatchNotDurableError(
                f"Batch was not applied to {self.target.name}; refusing to advance watermark",
                batch_id=token.batch_id,
                system=token.source_system,
                entity=token.entity,
            )

        return self.store.commit(token.source_system, token.entity, position, token)
