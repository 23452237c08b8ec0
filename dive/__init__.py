"""
dive: rate-limited, ordered block-range fetches from a blockchain archive.
"""

from dive.config import DatasourceConfig
from dive.datasource import Datasource
from dive.errors import (
    ConversionError,
    DatasourceError,
    FatalError,
    FetchError,
    InvalidRange,
    ProtocolViolation,
    QueryError,
    RetriesExhausted,
    RetryableError,
)
from dive.fetcher import Page, PageFetcher
from dive.limits import AsyncTokenBucket, ConcurrencyGate
from dive.query import (
    BlockRange,
    Dataset,
    LogFields,
    LogRequest,
    Query,
    QueryBuilder,
    TransactionFields,
    TransactionRequest,
)
from dive.scheduler import FetchState, RangeFetch, RangeScheduler, RetryPolicy
from dive.table import to_df

__version__ = "0.1.0"

__all__ = [
    "AsyncTokenBucket",
    "BlockRange",
    "ConcurrencyGate",
    "ConversionError",
    "Dataset",
    "Datasource",
    "DatasourceConfig",
    "DatasourceError",
    "FatalError",
    "FetchError",
    "FetchState",
    "InvalidRange",
    "LogFields",
    "LogRequest",
    "Page",
    "PageFetcher",
    "ProtocolViolation",
    "Query",
    "QueryError",
    "QueryBuilder",
    "RangeFetch",
    "RangeScheduler",
    "RetriesExhausted",
    "RetryPolicy",
    "RetryableError",
    "TransactionFields",
    "TransactionRequest",
    "to_df",
]
