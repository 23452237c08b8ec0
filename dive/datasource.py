"""
Datasource: the caller-facing facade over the range fetch engine.

    config = DatasourceConfig(base_url=BASE_URL, max_concurrency=10)
    async with Datasource(config) as ds:
        blocks = await ds.get_data_in_range(query, 14000000, 14000010)
        df = await ds.get_as_df(query, 14000000, 14000010)

One Datasource owns one rate limiter and one concurrency gate; every
request it issues, from any number of concurrent calls, goes through both.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

import aiohttp
import polars as pl

from dive.config import DatasourceConfig
from dive.fetcher import PageFetcher
from dive.limits import AsyncTokenBucket, ConcurrencyGate
from dive.query import BlockRange, Query
from dive.scheduler import PageSource, RangeScheduler, RetryPolicy
from dive.table import to_df


logger = logging.getLogger(__name__)

QueryLike = Union[Query, Mapping[str, Any]]


class Datasource:
    def __init__(
        self,
        config: DatasourceConfig,
        session: Optional[aiohttp.ClientSession] = None,
        fetcher: Optional[PageSource] = None,
    ):
        self.config = config
        self.gate = ConcurrencyGate(config.max_concurrency)
        self.limiter = AsyncTokenBucket(config.rate_per_sec, config.burst)
        self.retry = RetryPolicy(
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            throttle_on_429=config.throttle_on_429,
        )
        self._session = session
        self._owns_session = False
        self._fetcher = fetcher
        self._http_fetcher: Optional[PageFetcher] = None
        self._scheduler: Optional[RangeScheduler] = None

    async def __aenter__(self) -> "Datasource":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._owns_session = False
            self._http_fetcher = None
            self._scheduler = None

    def _page_fetcher(self) -> PageFetcher:
        if isinstance(self._fetcher, PageFetcher):
            return self._fetcher
        if self._http_fetcher is None:
            if self._session is None:
                self._session = aiohttp.ClientSession()
                self._owns_session = True
            self._http_fetcher = PageFetcher(
                self._session,
                self.config.base_url,
                resolve_worker=self.config.resolve_worker,
                request_timeout=self.config.request_timeout,
            )
        return self._http_fetcher

    @property
    def scheduler(self) -> RangeScheduler:
        if self._scheduler is None:
            fetcher = self._fetcher if self._fetcher is not None else self._page_fetcher()
            self._scheduler = RangeScheduler(fetcher, self.gate, self.limiter, self.retry)
        return self._scheduler

    async def get_dataset_height(self) -> int:
        fetcher = self._page_fetcher()
        async with self.gate.acquire():
            await self.limiter.acquire()
            return await fetcher.get_height()

    async def get_worker_url(self, block_number: int) -> str:
        fetcher = self._page_fetcher()
        async with self.gate.acquire():
            await self.limiter.acquire()
            return await fetcher.get_worker_url(block_number)

    async def get_data_in_range(
        self, query: QueryLike, start_block: int, end_block: int
    ) -> List[Dict[str, Any]]:
        """Blocks in [start_block, end_block), in block order."""
        block_range = BlockRange(start_block, end_block)
        query = Query.coerce(query)
        if block_range.is_empty:
            return []
        logger.info("Fetching blocks in range %s", block_range)
        if self.config.chunk_size is not None:
            return await self.scheduler.fetch_chunked(
                query, block_range, self.config.chunk_size
            )
        return await self.scheduler.fetch_range(query, block_range)

    async def get_as_df(
        self, query: QueryLike, start_block: int, end_block: int
    ) -> pl.DataFrame:
        query = Query.coerce(query)
        records = await self.get_data_in_range(query, start_block, end_block)
        return to_df(records, query)
