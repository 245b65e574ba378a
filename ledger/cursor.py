"""
Opaque continuation tokens for paginated reads.

A token is the urlsafe-base64 of the JSON-encoded last key of the previous
page. Clients treat it as opaque; the store decodes it back into the key
columns and resumes strictly after that key.
"""

import base64
import binascii
import json

from ledger.base import dumps
from ledger.errors import ValidationError


def encode_cursor(last_key):
    """Encode a dict of key columns, or return None for the last page."""
    if not last_key:
        return None
    raw = dumps(last_key, sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(token, required=()):
    """Decode a token produced by encode_cursor().

    Raises ValidationError if the token is not valid base64/JSON or is
    missing one of the *required* key columns.
    """
    if token is None or token == "":
        return None
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii"))
        key = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValidationError(f"Invalid continuation token: {token!r}") from exc
    if not isinstance(key, dict):
        raise ValidationError(f"Invalid continuation token: {token!r}")
    missing = [k for k in required if k not in key]
    if missing:
        raise ValidationError(f"Continuation token missing keys: {missing}")
    return key


class Page:
    """One page of results. Iterable; next_cursor is None on the last page."""

    def __init__(self, items, next_cursor=None):
        self.items = items
        self.next_cursor = next_cursor

    def __iter__(self):
        return iter(self.items)

    def __len__(self):
        return len(self.items)

    def __getitem__(self, index):
        return self.items[index]

    def to_body(self):
        return {
            "items": [i.to_dict() if hasattr(i, "to_dict") else i for i in self.items],
            "nextCursor": self.next_cursor,
        }
