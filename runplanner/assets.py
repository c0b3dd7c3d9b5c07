"""Print asset URL resolution with an explicit bounded TTL cache."""

from collections import OrderedDict
import time
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Least-recently-inserted eviction with a per-entry time to live."""

    def __init__(self, ttl_s: float, max_size: int = 1024, clock: Callable[[], float] = time.monotonic):
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.ttl_s = ttl_s
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def put(self, key: Hashable, value: V) -> None:
        if key in self._entries:
            del self._entries[key]
        self._entries[key] = (self._clock() + self.ttl_s, value)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class AssetResolver:
    """Turns an item's print asset reference into a fetchable URL.

    ``signer`` produces the URL for a reference (for example a signed storage
    URL); its results are cached for the cache's TTL.
    """

    def __init__(self, signer: Callable[[str], str], cache: TTLCache[str]):
        self.signer = signer
        self.cache = cache

    def resolve(self, asset_ref: str) -> str:
        cached = self.cache.get(asset_ref)
        if cached is not None:
            return cached
        url = self.signer(asset_ref)
        self.cache.put(asset_ref, url)
        return url


def passthrough_signer(asset_ref: str) -> str:
    return asset_ref
