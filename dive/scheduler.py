"""
Range scheduler: walks a block range page by page.

The archive decides how much of a requested span one page covers, so the
cursor advances strictly in order: the next request starts where the last
page ended. The concurrency gate and rate limiter are shared with every
other fetch on the same Datasource; while one page's records are merged,
the request for the next page is already queued on those gates.

Each range fetch is a small state machine (`RangeFetch`) so retry
accounting and cancellation can be observed from tests:

    IDLE -> AWAITING_PERMIT -> AWAITING_RATE_TOKEN -> FETCHING
         -> (RETRYING -> AWAITING_PERMIT ...)* -> ... -> DONE | FAILED
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from dive.errors import ProtocolViolation, RetriesExhausted, RetryableError
from dive.fetcher import Page
from dive.limits import AsyncTokenBucket, ConcurrencyGate
from dive.query import BlockRange, Query, chunked_ranges


logger = logging.getLogger(__name__)


class FetchState(enum.Enum):
    IDLE = "idle"
    AWAITING_PERMIT = "awaiting_permit"
    AWAITING_RATE_TOKEN = "awaiting_rate_token"
    FETCHING = "fetching"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


class PageSource(Protocol):
    async def fetch_page(self, query: Query, block_range: BlockRange) -> Page:
        ...


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 5
    backoff_base: float = 0.1
    backoff_max: float = 10.0
    throttle_on_429: bool = False

    def delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** max(0, attempt - 1)), self.backoff_max)


class RangeFetch:
    """Bookkeeping for one range: cursor, state history, counters."""

    def __init__(self, query: Query, block_range: BlockRange):
        self.query = query
        self.block_range = block_range
        self.cursor = block_range.start
        self.state = FetchState.IDLE
        self.history: List[FetchState] = [FetchState.IDLE]
        self.attempts = 0  # attempts on the current page
        self.pages = 0
        self.requests = 0
        self.error: Optional[BaseException] = None

    def transition(self, state: FetchState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("range %s cursor=%d -> %s", self.block_range, self.cursor, state.value)


class RangeScheduler:
    def __init__(
        self,
        fetcher: PageSource,
        gate: ConcurrencyGate,
        limiter: AsyncTokenBucket,
        retry: Optional[RetryPolicy] = None,
    ):
        self.fetcher = fetcher
        self.gate = gate
        self.limiter = limiter
        self.retry = retry or RetryPolicy()

    async def fetch_range(self, query: Query, block_range: BlockRange) -> List[Dict[str, Any]]:
        return await self.run(RangeFetch(query, block_range))

    async def fetch_chunked(
        self, query: Query, block_range: BlockRange, chunk_size: int
    ) -> List[Dict[str, Any]]:
        """Fetch contiguous chunks concurrently and join them in block order."""
        ranges = list(chunked_ranges(block_range, chunk_size))
        if len(ranges) <= 1:
            return await self.fetch_range(query, block_range)
        tasks = [asyncio.ensure_future(self.fetch_range(query, r)) for r in ranges]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return [record for chunk in results for record in chunk]

    async def run(self, fetch: RangeFetch) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        if fetch.block_range.is_empty:
            fetch.transition(FetchState.DONE)
            return records

        pending: Optional[asyncio.Future] = None
        try:
            pending = asyncio.ensure_future(self._fetch_page(fetch, fetch.cursor))
            while pending is not None:
                page = await pending
                if not fetch.cursor < page.next_block <= fetch.block_range.end:
                    raise ProtocolViolation(
                        f"Page from block {fetch.cursor} reports next block "
                        f"{page.next_block}, outside ({fetch.cursor}, {fetch.block_range.end}]"
                    )
                fetch.cursor = page.next_block
                fetch.pages += 1
                # queue the next page before merging this one
                if fetch.cursor < fetch.block_range.end:
                    pending = asyncio.ensure_future(self._fetch_page(fetch, fetch.cursor))
                else:
                    pending = None
                records.extend(page.records)
        except BaseException as exc:
            if pending is not None and not pending.done():
                pending.cancel()
            fetch.error = exc
            fetch.transition(FetchState.FAILED)
            raise

        fetch.transition(FetchState.DONE)
        logger.debug(
            "range %s done: %d pages, %d requests, %d blocks",
            fetch.block_range,
            fetch.pages,
            fetch.requests,
            len(records),
        )
        return records

    async def _fetch_page(self, fetch: RangeFetch, cursor: int) -> Page:
        block_range = BlockRange(cursor, fetch.block_range.end)
        fetch.attempts = 0
        while True:
            fetch.attempts += 1
            fetch.transition(FetchState.AWAITING_PERMIT)
            async with self.gate.acquire():
                fetch.transition(FetchState.AWAITING_RATE_TOKEN)
                await self.limiter.acquire()
                fetch.transition(FetchState.FETCHING)
                fetch.requests += 1
                try:
                    return await self.fetcher.fetch_page(fetch.query, block_range)
                except RetryableError as exc:
                    error = exc

            if fetch.attempts > self.retry.max_retries:
                raise RetriesExhausted(cursor, fetch.attempts, error) from error

            delay = self.retry.delay(fetch.attempts)
            if error.status == 429 and self.retry.throttle_on_429:
                self.limiter.throttle(
                    error.retry_after if error.retry_after is not None else delay
                )
            fetch.transition(FetchState.RETRYING)
            logger.warning(
                "Error fetching blocks starting at %d: %s. Retry %d/%d in %.2fs",
                cursor,
                error,
                fetch.attempts,
                self.retry.max_retries,
                delay,
            )
            await asyncio.sleep(delay)
