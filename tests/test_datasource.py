import asyncio

import pytest

from dive.config import DatasourceConfig
from dive.datasource import Datasource
from dive.errors import (
    ConversionError,
    DatasourceError,
    FatalError,
    InvalidRange,
    RetriesExhausted,
)
from dive.query import (
    LogFields,
    LogRequest,
    QueryBuilder,
    TransactionFields,
    TransactionRequest,
)
from tests.fakes import TRANSFER, USDC, ZERO_ADDRESS, ScriptedFetcher, make_header


def _config(archive, **kwargs) -> DatasourceConfig:
    kwargs.setdefault("backoff_base", 0.0)
    return DatasourceConfig(base_url=archive.base_url, **kwargs)


def _usdc_logs_query():
    return (
        QueryBuilder()
        .select_log_fields(
            LogFields(address=True, topics=True, data=True, log_index=True)
        )
        .add_log(LogRequest(address=[USDC], topic0=[TRANSFER]))
        .build()
    )


def _numbers(records):
    return [r["header"]["number"] for r in records]


def _usdc_log_count(archive, start, end):
    return sum(
        1
        for n in range(start, end)
        for log in archive.chain[n]["logs"]
        if log["address"] == USDC
    )


async def test_single_block_log_query(archive):
    query = _usdc_logs_query()

    async with Datasource(_config(archive, max_concurrency=10)) as ds:
        records = await ds.get_data_in_range(query, 14000005, 14000006)

    assert _numbers(records) == [14000005]
    logs = records[0]["logs"]
    expected = [
        log for log in archive.chain[14000005]["logs"] if log["address"] == USDC
    ]
    assert len(logs) == len(expected) == 1
    assert logs[0] == {
        "logIndex": expected[0]["logIndex"],
        "address": USDC,
        "topics": expected[0]["topics"],
        "data": expected[0]["data"],
    }
    # unselected fields never come back
    assert "transactionHash" not in logs[0]
    assert "transactionIndex" not in logs[0]


async def test_single_block_log_query_as_table(archive):
    query = _usdc_logs_query()

    async with Datasource(_config(archive)) as ds:
        df = await ds.get_as_df(query, 14000005, 14000006)

    assert df.columns == ["log_index", "address", "data", "topics"]
    assert df.height == 1
    assert df.n_chunks() == 1
    assert df["address"].to_list() == [USDC]


async def test_multi_page_range_is_complete_and_ordered(archive):
    query = QueryBuilder().add_log(LogRequest()).select_log_fields(LogFields(log_index=True)).build()

    async with Datasource(_config(archive, max_concurrency=1)) as ds:
        sequential = await ds.get_data_in_range(query, 14000000, 14000020)
    async with Datasource(_config(archive, max_concurrency=4, chunk_size=4)) as ds:
        chunked = await ds.get_data_in_range(query, 14000000, 14000020)

    assert _numbers(sequential) == list(range(14000000, 14000020))
    assert chunked == sequential


async def test_empty_range_makes_no_requests(archive):
    async with Datasource(_config(archive)) as ds:
        records = await ds.get_data_in_range(_usdc_logs_query(), 14000005, 14000005)

    assert records == []
    assert archive.queries == []
    assert archive.worker_lookups == []


async def test_inverted_range_is_rejected_before_any_request(archive):
    async with Datasource(_config(archive)) as ds:
        with pytest.raises(InvalidRange):
            await ds.get_data_in_range(_usdc_logs_query(), 14000006, 14000005)
        with pytest.raises(InvalidRange):
            await ds.get_as_df(_usdc_logs_query(), 14000006, 14000005)

    assert archive.queries == []


async def test_raw_dict_query_is_accepted(archive):
    raw = {
        "logs": [{"address": [USDC], "topic0": [TRANSFER]}],
        "fields": {"log": {"address": True, "topics": True, "data": True}},
    }

    async with Datasource(_config(archive)) as ds:
        df = await ds.get_as_df(raw, 14000000, 14000003)

    assert df.columns == ["address", "data", "topics"]
    assert df.height == _usdc_log_count(archive, 14000000, 14000003)


async def test_query_with_archive_flags_runs_end_to_end(archive):
    # log request carrying "transaction": true, as written for the archive
    raw = {
        "logs": [
            {
                "address": [USDC],
                "topic0": [TRANSFER],
                "transaction": True,
            }
        ],
        "fields": {"log": {"address": True, "topics": True, "data": True}},
    }

    async with Datasource(_config(archive)) as ds:
        df = await ds.get_as_df(raw, 14000000, 14000001)

    assert archive.queries[0]["logs"] == raw["logs"]
    assert df.columns == ["address", "data", "topics"]
    assert df.height == _usdc_log_count(archive, 14000000, 14000001)
    assert set(df["address"].to_list()) == {USDC}


async def test_block_header_fields_reach_the_table(archive):
    raw = {
        "logs": [{"address": [USDC]}],
        "fields": {"block": {"timestamp": True}, "log": {"logIndex": True}},
    }

    async with Datasource(_config(archive)) as ds:
        df = await ds.get_as_df(raw, 14000005, 14000006)

    assert archive.queries[0]["fields"]["block"] == {"timestamp": True, "number": True}
    assert df.columns == ["block_timestamp", "log_index"]
    assert df["block_timestamp"].to_list() == [make_header(14000005)["timestamp"]]


async def test_malformed_query_is_a_datasource_error(archive):
    async with Datasource(_config(archive)) as ds:
        with pytest.raises(DatasourceError):
            await ds.get_as_df({"logs": [{"address": 5}]}, 14000000, 14000001)

    assert archive.queries == []


async def test_transactions_query(archive):
    query = (
        QueryBuilder()
        .add_transaction(TransactionRequest(to=[ZERO_ADDRESS]))
        .select_tx_fields(TransactionFields(from_=True, to=True, value=True, block_number=True))
        .build()
    )

    async with Datasource(_config(archive)) as ds:
        df = await ds.get_as_df(query, 14000005, 14000006)

    assert df.columns == ["block_number", "from", "to", "value"]
    assert df["to"].to_list() == [ZERO_ADDRESS]
    assert df["block_number"].to_list() == [14000005]


async def test_server_error_then_success_is_transparent(archive):
    query = _usdc_logs_query()
    async with Datasource(_config(archive)) as ds:
        clean = await ds.get_data_in_range(query, 14000000, 14000006)

    archive.queries.clear()
    archive.script.append((503, "busy", {}))
    async with Datasource(_config(archive)) as ds:
        retried = await ds.get_data_in_range(query, 14000000, 14000006)

    assert retried == clean
    # the failed request was repeated for the same sub-range
    assert archive.queries[0]["fromBlock"] == archive.queries[1]["fromBlock"] == 14000000


async def test_persistent_failure_surfaces_retries_exhausted(archive):
    archive.script.extend([(500, "down", {})] * 10)

    async with Datasource(_config(archive, max_retries=2)) as ds:
        with pytest.raises(RetriesExhausted):
            await ds.get_data_in_range(_usdc_logs_query(), 14000000, 14000010)

    assert len(archive.queries) == 3


async def test_client_error_is_not_retried(archive):
    archive.script.append((400, "invalid query", {}))

    async with Datasource(_config(archive)) as ds:
        with pytest.raises(FatalError):
            await ds.get_data_in_range(_usdc_logs_query(), 14000000, 14000010)

    assert len(archive.queries) == 1


async def test_height_and_worker(archive):
    async with Datasource(_config(archive)) as ds:
        assert await ds.get_dataset_height() == archive.head
        assert await ds.get_worker_url(14000000) == archive.worker_url


async def test_conversion_failure_is_distinct_from_fetch_errors():
    class MixedTypes(ScriptedFetcher):
        async def fetch_page(self, query, block_range):
            page = await super().fetch_page(query, block_range)
            for record in page.records:
                if record["header"]["number"] % 2:
                    record["logs"][0]["logIndex"] = "odd"
            return page

    query = QueryBuilder().add_log(LogRequest()).select_log_fields(LogFields(log_index=True)).build()
    ds = Datasource(DatasourceConfig(base_url="http://archive.invalid"), fetcher=MixedTypes())

    records = await ds.get_data_in_range(query, 0, 4)
    assert len(records) == 4
    with pytest.raises(ConversionError):
        await ds.get_as_df(query, 0, 4)


async def test_concurrent_calls_share_one_gate():
    fetcher = ScriptedFetcher(page_size=1, delay=0.005)
    ds = Datasource(
        DatasourceConfig(base_url="http://archive.invalid", max_concurrency=3),
        fetcher=fetcher,
    )
    query = QueryBuilder().add_log(LogRequest()).build()

    results = await asyncio.gather(
        *[ds.get_data_in_range(query, i * 100, i * 100 + 5) for i in range(8)]
    )

    assert fetcher.peak <= 3
    assert ds.gate.peak == 3
    for i, records in enumerate(results):
        assert _numbers(records) == list(range(i * 100, i * 100 + 5))
