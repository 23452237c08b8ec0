#!/usr/bin/env python3
"""
Command line access to the archive.

    dive height
    dive logs --start 14000000 --end 14000010 \
        --address 0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48 \
        --topic0 0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef \
        --fields address,topics,data,log_index --output transfers.parquet
    dive transactions --start 14000005 --end 14000006 --to 0x0000000000000000000000000000000000000000
    dive query my_query.json --start 14000000 --end 14000100 --output out.csv

Connection settings come from DIVE_* environment variables (a .env file is
loaded too); the flags below override them.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import polars as pl
from tabulate import tabulate

from dive.config import DatasourceConfig
from dive.datasource import Datasource
from dive.errors import DatasourceError
from dive.query import (
    Dataset,
    LogRequest,
    Query,
    QueryBuilder,
    TransactionRequest,
    fields_from_names,
)


DEFAULT_LOG_FIELDS = "block_number,log_index,transaction_hash,address,topics,data"
DEFAULT_TX_FIELDS = "block_number,transaction_index,hash,from,to,value"


def _split_fields(value: str) -> List[str]:
    return [f.strip() for f in value.split(",") if f.strip()]


def _add_range_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=int, required=True, help="First block (inclusive)")
    parser.add_argument("--end", type=int, required=True, help="Last block (exclusive)")
    parser.add_argument(
        "--output",
        default=None,
        help="Write the table to this .csv or .parquet file",
    )
    parser.add_argument(
        "--preview", type=int, default=10, help="Rows to print (0 to disable)"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dive", description="Fetch logs and transactions from a blockchain archive."
    )
    parser.add_argument("--base-url", default=None, help="Archive base URL")
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--rps", type=float, default=None, help="Requests per second")
    parser.add_argument("--chunk-size", type=int, default=None)
    parser.add_argument("--debug", action="store_true")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("height", help="Print the archive's latest indexed block")

    logs = sub.add_parser("logs", help="Fetch event logs")
    _add_range_args(logs)
    logs.add_argument("--address", nargs="+", default=None)
    for i in range(4):
        logs.add_argument(f"--topic{i}", nargs="+", default=None)
    logs.add_argument("--fields", default=DEFAULT_LOG_FIELDS)

    txs = sub.add_parser("transactions", help="Fetch transactions")
    _add_range_args(txs)
    txs.add_argument("--from", dest="from_", nargs="+", default=None)
    txs.add_argument("--to", nargs="+", default=None)
    txs.add_argument("--sighash", nargs="+", default=None)
    txs.add_argument("--fields", default=DEFAULT_TX_FIELDS)

    raw = sub.add_parser("query", help="Run a JSON query file")
    raw.add_argument("query_file", type=Path)
    _add_range_args(raw)

    return parser


def build_query(args: argparse.Namespace) -> Query:
    if args.command == "logs":
        return (
            QueryBuilder()
            .add_log(
                LogRequest(
                    address=args.address,
                    topic0=args.topic0,
                    topic1=args.topic1,
                    topic2=args.topic2,
                    topic3=args.topic3,
                )
            )
            .select_log_fields(fields_from_names(Dataset.LOGS, _split_fields(args.fields)))
            .build()
        )
    if args.command == "transactions":
        return (
            QueryBuilder()
            .add_transaction(
                TransactionRequest(from_=args.from_, to=args.to, sighash=args.sighash)
            )
            .select_tx_fields(
                fields_from_names(Dataset.TRANSACTIONS, _split_fields(args.fields))
            )
            .build()
        )
    if args.command == "query":
        with open(args.query_file, "r", encoding="utf-8") as f:
            return Query.from_dict(json.load(f))
    raise ValueError(f"No query for command {args.command!r}")


def build_config(args: argparse.Namespace) -> DatasourceConfig:
    overrides = {}
    if args.base_url:
        overrides["base_url"] = args.base_url
    if args.concurrency is not None:
        overrides["max_concurrency"] = args.concurrency
    if args.rps is not None:
        overrides["rate_per_sec"] = args.rps
    if args.chunk_size is not None:
        overrides["chunk_size"] = args.chunk_size
    return DatasourceConfig.from_env(**overrides)


def write_output(df: pl.DataFrame, path: str) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    if out.suffix == ".parquet":
        df.write_parquet(out)
        return
    # CSV cannot hold nested values
    list_cols = [name for name, dtype in df.schema.items() if isinstance(dtype, pl.List)]
    if list_cols:
        df = df.with_columns(
            [pl.col(name).cast(pl.List(pl.String)).list.join(",") for name in list_cols]
        )
    df.write_csv(out)


def print_preview(df: pl.DataFrame, rows: int) -> None:
    if rows <= 0 or df.height == 0:
        return
    print(
        tabulate(
            df.head(rows).to_dicts(), headers="keys", tablefmt="github", showindex=False
        )
    )


async def main_async(args: argparse.Namespace) -> int:
    config = build_config(args)
    async with Datasource(config) as ds:
        if args.command == "height":
            print(await ds.get_dataset_height())
            return 0

        query = build_query(args)
        df = await ds.get_as_df(query, args.start, args.end)

    print(f"Fetched {df.height} rows for blocks [{args.start}, {args.end})", file=sys.stderr)
    print_preview(df, args.preview)
    if args.output:
        write_output(df, args.output)
        print(f"Wrote {args.output}", file=sys.stderr)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    debug = args.debug or os.environ.get("DIVE_DEBUG", "0") == "1"
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(main_async(args))
    except DatasourceError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except (ValueError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("Interrupted by user", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
