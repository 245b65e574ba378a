"""
Record base class: defines how ledger rows serialize to/from JSON.
Subclass with @dataclass to create ledger record types.

Rows come back from psycopg2 as dicts (RealDictCursor); from_row() keeps
only the fields the dataclass declares, so extra columns are ignored.
"""

import json
import time
import uuid
import dataclasses
from datetime import datetime, date
from decimal import Decimal
from enum import Enum


class _JSONEncoder(json.JSONEncoder):
    """Handles datetime, date, Decimal, UUID, Enum and dataclass serialization."""

    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, date):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return dataclasses.asdict(obj)
        return super().default(obj)


def dumps(obj, **kwargs):
    """json.dumps with the ledger encoder."""
    return json.dumps(obj, cls=_JSONEncoder, **kwargs)


def to_decimal(value):
    """Coerce a number or numeric string to Decimal without float noise."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class Record:
    """
    Base class for ledger rows.

    Subclass as a dataclass:

        @dataclass
        class Balance(Record):
            trader_id: str
            asset: str
            balance: Decimal = Decimal(0)

    Decimal fields are coerced on construction from rows or dicts, so
    callers may pass ints, numeric strings or Decimals. Enum members are
    stored by value.
    """

    _decimal_fields = ()

    def __post_init__(self):
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                setattr(self, f.name, value.value)
        for name in self._decimal_fields:
            value = getattr(self, name)
            if value is not None and not isinstance(value, Decimal):
                setattr(self, name, to_decimal(value))

    def to_dict(self):
        return dataclasses.asdict(self)

    def to_json(self):
        return dumps(self.to_dict())

    @classmethod
    def from_row(cls, row):
        """Build a record from a DB row mapping, ignoring unknown columns."""
        field_names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in row.items() if k in field_names})


def now_ms():
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)
