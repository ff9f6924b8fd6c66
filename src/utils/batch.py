"""
Chunked batch execution with per-item fallback.

BatchExecutor applies a caller-supplied operation to an ordered sequence of
items in fixed-size chunks. When a whole chunk fails, each item of that chunk
is retried on its own, so one bad item costs only itself. Item failures come
back as data in the BatchResult; run() never raises because of them.

Chunks and per-item retries run sequentially to respect the caller's rate
limits.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CHUNK_SIZE = 50


class ChunkFailure(Exception):
    """A chunk-level call failed or returned an unusable result."""

    pass


@dataclass
class BatchFailure(Generic[T]):
    """An item that failed even when retried on its own."""

    item: T
    error: Exception

    @property
    def reason(self) -> str:
        return str(self.error) or type(self.error).__name__


@dataclass
class BatchResult(Generic[T, R]):
    """
    Outcome of a batch run.

    Attributes:
        successes: Operation outputs for items that succeeded, in chunk order
        failures: Items that failed, with the error from their solo retry
    """

    successes: List[R] = field(default_factory=list)
    failures: List[BatchFailure[T]] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.successes)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    @property
    def failed_items(self) -> List[T]:
        return [failure.item for failure in self.failures]

    def summary(self) -> str:
        """Human-readable "N of M succeeded" line."""
        text = f"{self.succeeded} of {self.total} succeeded"
        if self.failures:
            text += f", {self.failed} failed"
        return text


def _chunks(items: Sequence[T], chunk_size: int):
    for start in range(0, len(items), chunk_size):
        yield items[start : start + chunk_size]


class BatchExecutor:
    """
    Generic chunked-apply engine with partial-failure isolation.

    The operation receives a list of items and must return one result per
    item (in any order it likes) or raise. A result list of the wrong length
    counts as a chunk failure.

    Example:
        executor = BatchExecutor(chunk_size=50)
        result = executor.run(message_ids, lambda ids: client.delete_many(ids))
        print(result.summary())
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.chunk_size = _validate_chunk_size(chunk_size)

    def run(
        self,
        items: Sequence[T],
        operation: Callable[[List[T]], Sequence[R]],
        chunk_size: Optional[int] = None,
    ) -> BatchResult:
        """
        Apply operation to items chunk by chunk.

        Args:
            items: Ordered targets
            operation: Called with a list of items, returns one result per item
            chunk_size: Overrides the executor's chunk size for this run

        Returns:
            BatchResult where every input item is either one success or one
            failure

        Raises:
            ValueError: If chunk_size is not a positive integer
        """
        size = self.chunk_size if chunk_size is None else _validate_chunk_size(chunk_size)
        items = list(items)
        result = BatchResult()

        for index, chunk in enumerate(_chunks(items, size)):
            try:
                result.successes.extend(_apply(operation, chunk))
            except Exception as e:
                logger.warning(
                    f"Chunk {index} ({len(chunk)} items) failed: {e}. Retrying items individually"
                )
                self._retry_individually(operation, chunk, result)

        if result.failures:
            logger.warning(f"Batch finished: {result.summary()}")
        else:
            logger.debug(f"Batch finished: {result.summary()}")
        return result

    @staticmethod
    def _retry_individually(
        operation: Callable[[List[T]], Sequence[R]], chunk: List[T], result: BatchResult
    ) -> None:
        for item in chunk:
            try:
                result.successes.extend(_apply(operation, [item]))
            except Exception as e:
                logger.debug(f"Item {item!r} failed: {e}")
                result.failures.append(BatchFailure(item=item, error=e))


def _apply(operation: Callable[[List[T]], Sequence[R]], chunk: List[T]) -> List[Any]:
    outputs = operation(list(chunk))
    if outputs is None:
        raise ChunkFailure("operation returned None")
    outputs = list(outputs)
    if len(outputs) != len(chunk):
        raise ChunkFailure(f"operation returned {len(outputs)} results for {len(chunk)} items")
    return outputs


def _validate_chunk_size(chunk_size: int) -> int:
    if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size < 1:
        raise ValueError(f"chunk_size must be a positive integer, got {chunk_size!r}")
    return chunk_size


def process_in_batches(
    items: Sequence[T],
    chunk_size: int,
    operation: Callable[[List[T]], Sequence[R]],
) -> BatchResult:
    """One-off helper: BatchExecutor(chunk_size).run(items, operation)."""
    return BatchExecutor(chunk_size).run(items, operation)
