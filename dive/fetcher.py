"""
One page request against the archive.

`PageFetcher.fetch_page` resolves the worker for the starting block (unless
worker resolution is off), POSTs the query with the block bounds, and turns
the JSON answer into a `Page`. It does not retry and holds no gate or rate
token itself; the scheduler wraps every call in both.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from dive.errors import FatalError, ProtocolViolation, RetryableError
from dive.query import BlockRange, Query


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Page:
    """Blocks returned for one request, plus the first block not yet covered."""

    block_range: BlockRange
    records: List[Dict[str, Any]]
    next_block: int

    @property
    def is_final(self) -> bool:
        return self.next_block >= self.block_range.end


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _block_number(block: Any) -> int:
    try:
        number = block["header"]["number"]
    except (KeyError, TypeError) as exc:
        raise FatalError(
            "Invalid block data format: 'header.number' field missing"
        ) from exc
    if isinstance(number, bool) or not isinstance(number, int):
        raise FatalError(f"Invalid block number {number!r}: expected an integer")
    return number


def parse_page(body: str, block_range: BlockRange) -> Page:
    """Decode a worker response and check it against the coverage contract."""
    try:
        blocks = json.loads(body)
    except ValueError as exc:
        raise FatalError(f"Error parsing JSON: {exc}") from exc
    if not isinstance(blocks, list):
        raise FatalError("Invalid JSON format: expected an array of blocks")
    if not blocks:
        raise ProtocolViolation(
            f"Archive returned no blocks for {block_range}; no progress from "
            f"{block_range.start}"
        )

    previous = None
    for block in blocks:
        number = _block_number(block)
        if not block_range.start <= number < block_range.end:
            raise ProtocolViolation(
                f"Block {number} is outside the requested range {block_range}"
            )
        if previous is not None and number <= previous:
            raise ProtocolViolation(
                f"Blocks out of order: {number} follows {previous}"
            )
        previous = number

    return Page(block_range=block_range, records=blocks, next_block=previous + 1)


class PageFetcher:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        resolve_worker: bool = True,
        request_timeout: float = 60.0,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.resolve_worker = resolve_worker
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)

    async def _request(self, method: str, url: str, **kwargs: Any) -> str:
        try:
            async with self.session.request(
                method, url, timeout=self.timeout, **kwargs
            ) as resp:
                body = await resp.text()
                status = resp.status
                retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RetryableError(f"{method} {url} failed: {exc!r}") from exc

        if status == 429 or status >= 500:
            raise RetryableError(
                f"HTTP {status} for {method} {url}",
                status=status,
                retry_after=retry_after,
            )
        if status >= 400 or status < 200:
            raise FatalError(f"HTTP {status} for {method} {url}: {body[:200]}", status=status)
        return body

    async def get_height(self) -> int:
        body = await self._request("GET", f"{self.base_url}/height")
        try:
            return int(body.strip())
        except ValueError as exc:
            raise FatalError(f"Invalid height response: {body[:100]!r}") from exc

    async def get_worker_url(self, block_number: int) -> str:
        body = await self._request("GET", f"{self.base_url}/{block_number}/worker")
        url = body.strip()
        if not url.startswith(("http://", "https://")):
            raise FatalError(f"Invalid worker URL: {url[:100]!r}")
        return url

    async def fetch_page(self, query: Query, block_range: BlockRange) -> Page:
        if self.resolve_worker:
            url = await self.get_worker_url(block_range.start)
        else:
            url = self.base_url
        # the archive treats toBlock as inclusive
        payload = query.to_wire(block_range.start, block_range.end - 1)
        body = await self._request("POST", url, json=payload)
        page = parse_page(body, block_range)
        logger.debug(
            "Fetched %d blocks in range [%d, %d)",
            len(page.records),
            block_range.start,
            page.next_block,
        )
        return page
