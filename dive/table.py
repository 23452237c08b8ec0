"""
Flatten archive block records into one polars DataFrame.

Columns are the selected block header fields (`block_*`), then the selected
fields of every dataset kind in the query, logs first, each kind in its
declared order, without duplicates. Each log or transaction becomes one row
carrying its block's header values; columns that were not selected for that
row's kind stay null. A query that selects header fields but no dataset
kind gets one row per block.
"""

from typing import Any, Dict, List, Mapping, Sequence

import polars as pl

from dive.errors import ConversionError
from dive.query import Dataset, FieldSpec, Query


def output_columns(query: Query) -> List[str]:
    columns: List[str] = []
    specs = list(query.header_fields())
    for dataset in query.datasets:
        specs.extend(query.selected_fields(dataset))
    for spec in specs:
        if spec.column not in columns:
            columns.append(spec.column)
    return columns


def _row_value(spec: FieldSpec, item: Mapping[str, Any], block_number: int) -> Any:
    if spec.wire is None:
        return block_number
    return item.get(spec.wire)


def to_df(records: Sequence[Mapping[str, Any]], query: Query) -> pl.DataFrame:
    columns = output_columns(query)
    data: Dict[str, List[Any]] = {name: [] for name in columns}
    header_specs = query.header_fields()
    selected = {dataset: query.selected_fields(dataset) for dataset in query.datasets}

    def emit(row: Mapping[str, Any]) -> None:
        for name in columns:
            data[name].append(row.get(name))

    for block in records:
        if not isinstance(block, Mapping):
            raise ConversionError(f"Expected a block object, got {type(block).__name__}")
        header = block.get("header")
        if not isinstance(header, Mapping) or "number" not in header:
            raise ConversionError("Block record without 'header.number'")
        block_number = header["number"]
        block_row = {spec.column: header.get(spec.wire) for spec in header_specs}

        if not selected and header_specs:
            emit(block_row)
            continue

        for dataset, specs in selected.items():
            items = block.get(dataset.value) or []
            if not isinstance(items, list):
                raise ConversionError(
                    f"Block {block_number}: '{dataset.value}' is not a list"
                )
            for item in items:
                if not isinstance(item, Mapping):
                    raise ConversionError(
                        f"Block {block_number}: {dataset.value} entry is not an object"
                    )
                row = dict(block_row)
                row.update(
                    {spec.column: _row_value(spec, item, block_number) for spec in specs}
                )
                emit(row)

    try:
        series = [pl.Series(name, values, strict=True) for name, values in data.items()]
        return pl.DataFrame(series).rechunk()
    except (pl.exceptions.PolarsError, TypeError, ValueError, OverflowError) as exc:
        raise ConversionError(f"Could not assemble table: {exc}") from exc


def count_rows_by_dataset(records: Sequence[Mapping[str, Any]]) -> Dict[str, int]:
    """Number of items per dataset kind across all blocks (CLI summary)."""
    counts = {dataset.value: 0 for dataset in Dataset}
    for block in records:
        for dataset in Dataset:
            counts[dataset.value] += len(block.get(dataset.value) or [])
    return counts
