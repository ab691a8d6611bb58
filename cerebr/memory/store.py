# cerebr/memory/store.py

import asyncio
import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from cerebr.core.errors import StorageFailure

Keys = Union[str, Iterable[str]]


def as_key_list(keys: Keys) -> List[str]:
    if isinstance(keys, str):
        return [keys]
    return list(keys)


class KeyValueStore:
    """
    Async key-value contract the chat engine is written against.

    - get(key | keys) -> {key: value} (missing keys are simply absent)
    - set({key: value}) -> None, last writer wins per key
    - remove(key | keys) -> None, removing a missing key is not an error

    Values are JSON-compatible objects. There are no transactions; a single
    set() of one key is the unit of atomicity.
    """

    async def get(self, keys: Keys) -> Dict[str, Any]:
        raise NotImplementedError

    async def set(self, items: Mapping[str, Any]) -> None:
        raise NotImplementedError

    async def remove(self, keys: Keys) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class QuotaExceeded(StorageFailure):
    pass


class InMemoryKeyValueStore(KeyValueStore):
    """
    Dictionary-backed store. Values are JSON round-tripped on the way in and
    out so callers never share mutable state with the store, as with a real
    backend. Each call yields to the event loop once.
    """

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self._data: Dict[str, str] = {}
        self.quota_bytes = quota_bytes

    def _usage_with(self, encoded: Mapping[str, str]) -> int:
        merged = dict(self._data)
        merged.update(encoded)
        return sum(len(k) + len(v) for k, v in merged.items())

    async def get(self, keys: Keys) -> Dict[str, Any]:
        await asyncio.sleep(0)
        result: Dict[str, Any] = {}
        for key in as_key_list(keys):
            if key in self._data:
                result[key] = json.loads(self._data[key])
        return result

    async def set(self, items: Mapping[str, Any]) -> None:
        await asyncio.sleep(0)
        encoded = {k: json.dumps(v, ensure_ascii=False) for k, v in items.items()}
        if self.quota_bytes is not None and self._usage_with(encoded) > self.quota_bytes:
            raise QuotaExceeded(f"Store quota of {self.quota_bytes} bytes exceeded.")
        self._data.update(encoded)

    async def remove(self, keys: Keys) -> None:
        await asyncio.sleep(0)
        for key in as_key_list(keys):
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)

    def raw(self, key: str) -> Any:
        return json.loads(self._data[key]) if key in self._data else None
