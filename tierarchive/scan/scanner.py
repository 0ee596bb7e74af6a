"""
Eligibility scanner.

Walks the hot store oldest first and yields every record whose write
timestamp is older than the archival threshold.

Invariants:
    - Read-only: the scanner never mutates the hot store
    - Candidates come out in (timestamp_ms, partition_key, record_id) order
    - Pages are fetched lazily; at most one page is held in memory
    - The checkpoint is saved after each page and cleared when the scan is
      exhausted

How to change safely:
    - The cutoff is computed once per scan so a long scan has a stable
      eligibility boundary
    - Changing the scan order requires clearing stored checkpoints
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Callable, Optional

from ..models import MS_PER_DAY, ArchivalCandidate, ScanCursor, now_ms
from ..stores.base import HotStore
from .checkpoint import CheckpointStore, InMemoryCheckpointStore

logger = logging.getLogger(__name__)


class EligibilityScanner:
    """Produces archival candidates from the hot store.

    Example:
        >>> scanner = EligibilityScanner(hot, threshold_days=90)
        >>> async for candidate in scanner.scan():
        ...     print(candidate.key)
    """

    def __init__(
        self,
        hot: HotStore,
        threshold_days: float = 90,
        page_size: int = 1000,
        checkpoints: Optional[CheckpointStore] = None,
        name: str = "eligibility",
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Initialize the scanner.

        Args:
            hot: Hot store to scan
            threshold_days: Age in days after which a record is eligible
            page_size: Candidates fetched per query
            checkpoints: Where the resume cursor is kept
            name: Checkpoint name for this scan
            clock: Millisecond clock, injectable for tests
        """
        if threshold_days < 0:
            raise ValueError("threshold_days must be >= 0")
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.hot = hot
        self.threshold_days = threshold_days
        self.page_size = page_size
        self.checkpoints = checkpoints or InMemoryCheckpointStore()
        self.name = name
        self._clock = clock
        self.scanned_count = 0

    def cutoff_ms(self) -> int:
        """Records written before this instant are eligible."""
        return self._clock() - int(self.threshold_days * MS_PER_DAY)

    async def scan(self, resume: bool = True) -> AsyncIterator[ArchivalCandidate]:
        """Yield eligible candidates, oldest first.

        Args:
            resume: Continue from the saved checkpoint if there is one
        """
        cutoff = self.cutoff_ms()
        cursor: Optional[ScanCursor] = None
        if resume:
            cursor = await self.checkpoints.load(self.name)
            if cursor is not None:
                logger.info(
                    "Resuming scan from checkpoint",
                    extra={"scan": self.name, "cursor": cursor.to_dict()},
                )

        pages = 0
        yielded = 0
        while True:
            page = await self.hot.scan_older_than(cutoff, after=cursor, limit=self.page_size)
            if not page:
                break
            pages += 1
            for candidate in page:
                yielded += 1
                self.scanned_count += 1
                yield candidate
            cursor = ScanCursor.after(page[-1])
            await self.checkpoints.save(self.name, cursor)
            if len(page) < self.page_size:
                break

        await self.checkpoints.clear(self.name)
        logger.info(
            "Scan complete",
            extra={"scan": self.name, "pages": pages, "candidates": yielded, "cutoff_ms": cutoff},
        )
