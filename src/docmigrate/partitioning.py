"""
Static partitioning of a collection's ordered key space.

Partitions are computed once at validation time and never change for the
life of a job, so each worker owns a disjoint key range and no two
transactions contend on the same documents.

Boundaries fall on batch boundaries of the ordered key list. The first
range is unbounded below and the last unbounded above, so documents
inserted during the run still land in exactly one partition.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from docmigrate.models import KeyRange, MigrationConfig
from docmigrate.stores.interface import DocumentStore

logger = logging.getLogger(__name__)


def split_key_space(keys: Sequence[str], batch_size: int, partitions: int) -> list[KeyRange]:
    """
    Split sorted ``keys`` into at most ``partitions`` half-open ranges.

    Whole batches are spread as evenly as possible: 10,000 keys at a batch
    size of 200 over 4 partitions gives 13, 13, 12 and 12 batches. Fewer
    partitions are returned when there are fewer batches than workers.

    Args:
        keys: Document keys in ascending order
        batch_size: Documents per batch
        partitions: Upper bound on the number of ranges

    Returns:
        Ranges ordered by index; their union is the whole key space.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    if partitions < 1:
        raise ValueError("partitions must be positive")

    total = len(keys)
    batches = -(-total // batch_size)
    count = max(1, min(partitions, batches))
    base, extra = divmod(batches, count)

    starts: list[int] = []
    offset = 0
    for index in range(count):
        starts.append(offset)
        offset += (base + (1 if index < extra else 0)) * batch_size

    ranges: list[KeyRange] = []
    for index, start in enumerate(starts):
        end = starts[index + 1] if index + 1 < count else total
        ranges.append(
            KeyRange(
                index=index,
                start_key=None if index == 0 else keys[start],
                end_key=keys[end] if index + 1 < count else None,
                estimated_documents=max(0, min(end, total) - start),
            )
        )
    return ranges


async def compute_partitions(
    store: DocumentStore,
    collection: str,
    config: MigrationConfig,
) -> list[KeyRange]:
    """Read the collection's keys once and split them for ``config.concurrency_limit`` workers."""
    keys = [key async for key in store.iter_keys(collection)]
    ranges = split_key_space(keys, config.batch_size, config.concurrency_limit)
    logger.info(
        "Partitioned %s: %d documents into %d range(s)",
        collection,
        len(keys),
        len(ranges),
    )
    return ranges


__all__ = ["split_key_space", "compute_partitions"]
