"""
Query values sent to the archive.

A `Query` is immutable: the scheduler passes the same object to every page
request and only the block bounds change per request (see `Query.to_wire`).
`QueryBuilder` is the mutable, fluent way to put one together.

Wire form (archive JSON):

    {
      "fromBlock": 14000005, "toBlock": 14000005,
      "fields": {"block": {"number": true}, "log": {"address": true, ...}},
      "logs": [{"address": ["0x..."], "topic0": ["0x..."]}],
      "transactions": [{"to": ["0x..."]}]
    }
"""

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple

from dive.errors import InvalidRange, QueryError


class Dataset(enum.Enum):
    LOGS = "logs"
    TRANSACTIONS = "transactions"

    @property
    def field_key(self) -> str:
        # key of this dataset's selection mask under "fields"
        return "log" if self is Dataset.LOGS else "transaction"


class FieldSpec(NamedTuple):
    attr: str  # attribute on the *Fields mask
    column: str  # output column name
    wire: Optional[str]  # archive field name; None = taken from the block header


LOG_FIELD_SPECS: Tuple[FieldSpec, ...] = (
    FieldSpec("log_index", "log_index", "logIndex"),
    FieldSpec("transaction_index", "transaction_index", "transactionIndex"),
    FieldSpec("block_number", "block_number", None),
    FieldSpec("address", "address", "address"),
    FieldSpec("data", "data", "data"),
    FieldSpec("topics", "topics", "topics"),
    FieldSpec("transaction_hash", "transaction_hash", "transactionHash"),
)

TX_FIELD_SPECS: Tuple[FieldSpec, ...] = (
    FieldSpec("block_number", "block_number", None),
    FieldSpec("transaction_index", "transaction_index", "transactionIndex"),
    FieldSpec("from_", "from", "from"),
    FieldSpec("to", "to", "to"),
    FieldSpec("hash", "hash", "hash"),
    FieldSpec("gas", "gas", "gas"),
    FieldSpec("gas_price", "gas_price", "gasPrice"),
    FieldSpec("max_fee_per_gas", "max_fee_per_gas", "maxFeePerGas"),
    FieldSpec(
        "max_priority_fee_per_gas", "max_priority_fee_per_gas", "maxPriorityFeePerGas"
    ),
    FieldSpec("input", "input", "input"),
    FieldSpec("nonce", "nonce", "nonce"),
    FieldSpec("value", "value", "value"),
    FieldSpec("v", "v", "v"),
    FieldSpec("r", "r", "r"),
    FieldSpec("s", "s", "s"),
    FieldSpec("y_parity", "y_parity", "yParity"),
    FieldSpec("chain_id", "chain_id", "chainId"),
    FieldSpec("gas_used", "gas_used", "gasUsed"),
    FieldSpec("cumulative_gas_used", "cumulative_gas_used", "cumulativeGasUsed"),
    FieldSpec("effective_gas_price", "effective_gas_price", "effectiveGasPrice"),
    FieldSpec("contract_address", "contract_address", "contractAddress"),
    FieldSpec("type_", "type", "type"),
    FieldSpec("status", "status", "status"),
    FieldSpec("sighash", "sighash", "sighash"),
)

FIELD_SPECS: Dict[Dataset, Tuple[FieldSpec, ...]] = {
    Dataset.LOGS: LOG_FIELD_SPECS,
    Dataset.TRANSACTIONS: TX_FIELD_SPECS,
}


# =====================
# Block range
# =====================


@dataclass(frozen=True)
class BlockRange:
    """Half-open block interval [start, end)."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < 0 or self.start > self.end:
            raise InvalidRange(self.start, self.end)

    @property
    def is_empty(self) -> bool:
        return self.start == self.end

    def __len__(self) -> int:
        return self.end - self.start

    def __str__(self) -> str:
        return f"[{self.start}, {self.end})"


def chunked_ranges(block_range: BlockRange, max_span: int) -> Iterable[BlockRange]:
    current = block_range.start
    while current < block_range.end:
        upper = min(current + max_span, block_range.end)
        yield BlockRange(current, upper)
        current = upper


# =====================
# Filters
# =====================


def _normalize(name: str, values: Any) -> Optional[Tuple[str, ...]]:
    # archive matches hex strings lowercase only
    if values is None:
        return None
    if isinstance(values, str):
        values = [values]
    if not isinstance(values, (list, tuple)) or not all(isinstance(v, str) for v in values):
        raise QueryError(f"Filter {name!r} must be a list of strings, got {values!r}")
    return tuple(v.lower() for v in values)


def _split_request(kind: str, raw: Any, wire_names: Iterable[str]):
    if not isinstance(raw, Mapping):
        raise QueryError(f"Each {kind} request must be an object, got {raw!r}")
    wire_names = set(wire_names)
    known = {k: v for k, v in raw.items() if k in wire_names}
    extra = {k: v for k, v in raw.items() if k not in wire_names}
    return known, extra


@dataclass(frozen=True)
class LogRequest:
    """Log filter. Keys the archive accepts beyond these (e.g. `"transaction":
    true` to pull parent transactions) ride along untouched in `extra`."""

    address: Optional[Tuple[str, ...]] = None
    topic0: Optional[Tuple[str, ...]] = None
    topic1: Optional[Tuple[str, ...]] = None
    topic2: Optional[Tuple[str, ...]] = None
    topic3: Optional[Tuple[str, ...]] = None
    extra: Dict[str, Any] = field(default_factory=dict, hash=False)

    _WIRE = ("address", "topic0", "topic1", "topic2", "topic3")

    def __post_init__(self) -> None:
        for name in self._WIRE:
            object.__setattr__(self, name, _normalize(name, getattr(self, name)))
        object.__setattr__(self, "extra", dict(self.extra))

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        for name in self._WIRE:
            if getattr(self, name) is not None:
                out[name] = list(getattr(self, name))
        return out

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any]) -> "LogRequest":
        known, extra = _split_request("log", raw, cls._WIRE)
        return cls(extra=extra, **known)


@dataclass(frozen=True)
class TransactionRequest:
    from_: Optional[Tuple[str, ...]] = None
    to: Optional[Tuple[str, ...]] = None
    sighash: Optional[Tuple[str, ...]] = None
    extra: Dict[str, Any] = field(default_factory=dict, hash=False)

    _WIRE = (("from_", "from"), ("to", "to"), ("sighash", "sighash"))

    def __post_init__(self) -> None:
        for attr, wire in self._WIRE:
            object.__setattr__(self, attr, _normalize(wire, getattr(self, attr)))
        object.__setattr__(self, "extra", dict(self.extra))

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        for attr, wire in self._WIRE:
            if getattr(self, attr) is not None:
                out[wire] = list(getattr(self, attr))
        return out

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any]) -> "TransactionRequest":
        by_wire = {wire: attr for attr, wire in cls._WIRE}
        known, extra = _split_request("transaction", raw, by_wire)
        return cls(extra=extra, **{by_wire[k]: v for k, v in known.items()})


# =====================
# Field masks
# =====================


@dataclass(frozen=True)
class LogFields:
    log_index: bool = False
    transaction_index: bool = False
    block_number: bool = False
    address: bool = False
    data: bool = False
    topics: bool = False
    transaction_hash: bool = False


@dataclass(frozen=True)
class TransactionFields:
    block_number: bool = False
    transaction_index: bool = False
    from_: bool = False
    to: bool = False
    hash: bool = False
    gas: bool = False
    gas_price: bool = False
    max_fee_per_gas: bool = False
    max_priority_fee_per_gas: bool = False
    input: bool = False
    nonce: bool = False
    value: bool = False
    v: bool = False
    r: bool = False
    s: bool = False
    y_parity: bool = False
    chain_id: bool = False
    gas_used: bool = False
    cumulative_gas_used: bool = False
    effective_gas_price: bool = False
    contract_address: bool = False
    type_: bool = False
    status: bool = False
    sighash: bool = False


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _split_mask(dataset: Dataset, raw: Any):
    """Known fields go into the mask; other names are returned as-is."""
    if not isinstance(raw, Mapping):
        raise QueryError(f"Field selection {dataset.field_key!r} must be an object")
    specs = FIELD_SPECS[dataset]
    by_wire = {s.wire: s.attr for s in specs if s.wire is not None}
    by_column = {s.column: s.attr for s in specs}
    selected = {}
    unknown = {}
    for key, enabled in raw.items():
        attr = by_wire.get(key) or by_column.get(key)
        if attr is None:
            unknown[key] = enabled
        else:
            selected[attr] = bool(enabled)
    mask_cls = LogFields if dataset is Dataset.LOGS else TransactionFields
    return mask_cls(**selected), unknown


# =====================
# Query
# =====================


@dataclass(frozen=True)
class Query:
    """Archive query minus the block bounds.

    Filters, field selections and top-level keys this class does not model
    (`traces`, `blocks`, `fields.trace`, unknown field names, ...) are kept
    and sent back to the archive unchanged.
    """

    logs: Tuple[LogRequest, ...] = ()
    transactions: Tuple[TransactionRequest, ...] = ()
    log_fields: LogFields = field(default_factory=LogFields)
    tx_fields: TransactionFields = field(default_factory=TransactionFields)
    include_all_blocks: bool = False
    block_fields: Tuple[str, ...] = ()  # header fields, archive names
    extra_fields: Dict[str, Dict[str, Any]] = field(default_factory=dict, hash=False)
    extra: Dict[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "logs", tuple(self.logs))
        object.__setattr__(self, "transactions", tuple(self.transactions))
        object.__setattr__(self, "block_fields", tuple(self.block_fields))
        object.__setattr__(
            self, "extra_fields", {k: dict(v) for k, v in self.extra_fields.items()}
        )
        object.__setattr__(self, "extra", dict(self.extra))

    @property
    def datasets(self) -> Tuple[Dataset, ...]:
        present = []
        if self.logs:
            present.append(Dataset.LOGS)
        if self.transactions:
            present.append(Dataset.TRANSACTIONS)
        return tuple(present)

    def mask(self, dataset: Dataset):
        return self.log_fields if dataset is Dataset.LOGS else self.tx_fields

    def selected_fields(self, dataset: Dataset) -> List[FieldSpec]:
        mask = self.mask(dataset)
        specs = [spec for spec in FIELD_SPECS[dataset] if getattr(mask, spec.attr)]
        for name, enabled in self.extra_fields.get(dataset.field_key, {}).items():
            if enabled:
                specs.append(FieldSpec(name, _snake(name), name))
        return specs

    def header_fields(self) -> List[FieldSpec]:
        return [FieldSpec(name, "block_" + _snake(name), name) for name in self.block_fields]

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        selection: Dict[str, Dict[str, Any]] = {}
        if self.block_fields:
            selection["block"] = {name: True for name in self.block_fields}
        for dataset in Dataset:
            wire_fields: Dict[str, Any] = {
                spec.wire: True
                for spec in FIELD_SPECS[dataset]
                if spec.wire is not None and getattr(self.mask(dataset), spec.attr)
            }
            wire_fields.update(self.extra_fields.get(dataset.field_key, {}))
            if wire_fields:
                selection[dataset.field_key] = wire_fields
        for key, value in self.extra_fields.items():
            selection.setdefault(key, dict(value))
        if selection:
            out["fields"] = selection
        if self.logs:
            out["logs"] = [r.to_wire() for r in self.logs]
        if self.transactions:
            out["transactions"] = [r.to_wire() for r in self.transactions]
        if self.include_all_blocks:
            out["includeAllBlocks"] = True
        out.update(self.extra)
        return out

    def to_wire(self, from_block: int, to_block: Optional[int] = None) -> Dict[str, Any]:
        """Request body for one page; `to_block` is inclusive on the wire."""
        body = self.to_dict()
        selection = dict(body.get("fields", {}))
        # next-position is derived from header.number
        selection["block"] = {**selection.get("block", {}), "number": True}
        body["fields"] = selection
        body["fromBlock"] = from_block
        if to_block is not None:
            body["toBlock"] = to_block
        return body

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Query":
        if not isinstance(raw, Mapping):
            raise QueryError(f"Query must be an object, got {type(raw).__name__}")
        if "fromBlock" in raw or "toBlock" in raw:
            raise QueryError("Block bounds are passed to the fetch, not the query")

        def requests(key: str) -> List[Any]:
            value = raw.get(key) or []
            if not isinstance(value, (list, tuple)):
                raise QueryError(f"{key!r} must be a list of requests")
            return list(value)

        selection = raw.get("fields") or {}
        if not isinstance(selection, Mapping):
            raise QueryError("'fields' must be an object")

        kwargs: Dict[str, Any] = {
            "logs": tuple(LogRequest.from_wire(r) for r in requests("logs")),
            "transactions": tuple(
                TransactionRequest.from_wire(r) for r in requests("transactions")
            ),
            "include_all_blocks": bool(raw.get("includeAllBlocks", False)),
            "extra": {
                k: v
                for k, v in raw.items()
                if k not in ("fields", "logs", "transactions", "includeAllBlocks")
            },
        }
        extra_fields: Dict[str, Dict[str, Any]] = {}
        for key, value in selection.items():
            if not isinstance(value, Mapping):
                raise QueryError(f"Field selection {key!r} must be an object")
            if key == "block":
                kwargs["block_fields"] = tuple(name for name, on in value.items() if on)
            elif key == Dataset.LOGS.field_key:
                kwargs["log_fields"], unknown = _split_mask(Dataset.LOGS, value)
                if unknown:
                    extra_fields[key] = unknown
            elif key == Dataset.TRANSACTIONS.field_key:
                kwargs["tx_fields"], unknown = _split_mask(Dataset.TRANSACTIONS, value)
                if unknown:
                    extra_fields[key] = unknown
            else:
                extra_fields[key] = dict(value)
        kwargs["extra_fields"] = extra_fields
        return cls(**kwargs)

    @classmethod
    def coerce(cls, query: Any) -> "Query":
        if isinstance(query, Query):
            return query
        if isinstance(query, Mapping):
            return cls.from_dict(query)
        raise TypeError(f"Expected Query or mapping, got {type(query).__name__}")


class QueryBuilder:
    """Fluent builder; `build()` returns an immutable `Query`.

    Example:

        query = (
            QueryBuilder()
            .select_log_fields(LogFields(address=True, topics=True, data=True))
            .add_log(LogRequest(address=["0xa0b8..."], topic0=["0xddf2..."]))
            .build()
        )
    """

    def __init__(self) -> None:
        self._logs: List[LogRequest] = []
        self._transactions: List[TransactionRequest] = []
        self._log_fields = LogFields()
        self._tx_fields = TransactionFields()
        self._include_all_blocks = False
        self._block_fields: List[str] = []

    def add_log(self, request: LogRequest) -> "QueryBuilder":
        self._logs.append(request)
        return self

    def add_transaction(self, request: TransactionRequest) -> "QueryBuilder":
        self._transactions.append(request)
        return self

    def select_log_fields(self, log_fields: LogFields) -> "QueryBuilder":
        self._log_fields = log_fields
        return self

    def select_tx_fields(self, tx_fields: TransactionFields) -> "QueryBuilder":
        self._tx_fields = tx_fields
        return self

    def include_all_blocks(self, enabled: bool = True) -> "QueryBuilder":
        self._include_all_blocks = enabled
        return self

    def select_block_fields(self, *names: str) -> "QueryBuilder":
        """Header fields by archive name, e.g. `"timestamp"`, `"baseFeePerGas"`."""
        self._block_fields = list(names)
        return self

    def build(self) -> Query:
        return Query(
            logs=tuple(self._logs),
            transactions=tuple(self._transactions),
            log_fields=self._log_fields,
            tx_fields=self._tx_fields,
            include_all_blocks=self._include_all_blocks,
            block_fields=tuple(self._block_fields),
        )


def fields_from_names(dataset: Dataset, names: Iterable[str]):
    """Mask with the given column names switched on (CLI helper)."""
    mask, unknown = _split_mask(
        dataset, {name.strip(): True for name in names if name.strip()}
    )
    if unknown:
        raise QueryError(f"Unknown {dataset.field_key} fields: {sorted(unknown)}")
    return mask


__all__ = [
    "BlockRange",
    "Dataset",
    "FieldSpec",
    "LogFields",
    "LogRequest",
    "Query",
    "QueryBuilder",
    "TransactionFields",
    "TransactionRequest",
    "chunked_ranges",
    "fields_from_names",
]
