"""Payload encoding for history, activity inputs and results.

Payloads are pickled. Command inputs are additionally hashed with
xxhash so replay can detect a call site whose arguments changed.

Set iteration order depends on insertion history and, for str and bytes
members, on the per-process hash seed, so sets and frozensets are put in
a canonical order before hashing. This reaches into tuples, lists and
dicts; sets held inside other objects (dataclass fields and so on) are
hashed as pickled and should be avoided in activity arguments.
"""

import pickle
from typing import Any

import xxhash

__all__ = ["encode", "decode", "payload_hash"]


def encode(value: Any) -> bytes:
    """Serialize a payload."""
    return pickle.dumps(value)


def decode(data: bytes | None) -> Any:
    """Deserialize a payload (None stays None)."""
    if data is None:
        return None
    return pickle.loads(data)


def payload_hash(value: Any) -> str:
    """Stable hash of a payload value, independent of set ordering."""
    return xxhash.xxh64(pickle.dumps(_canonical(value))).hexdigest()


def _canonical(value: Any) -> Any:
    if isinstance(value, set | frozenset):
        members = sorted((_canonical(v) for v in value), key=pickle.dumps)
        return (type(value).__name__, tuple(members))
    if type(value) is tuple:
        return tuple(_canonical(v) for v in value)
    if type(value) is list:
        return [_canonical(v) for v in value]
    if type(value) is dict:
        return {_canonical(k): _canonical(v) for k, v in value.items()}
    return value
