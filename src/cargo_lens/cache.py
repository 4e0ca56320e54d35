from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from semantic_version import Version

DEFAULT_TTL_S = 60 * 60


def index_scope_key(index_url: str) -> str:
    """
    将 registry 索引地址归一化为缓存的 scope key。
    """
    return index_url.strip().rstrip("/")


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """
    单个 crate 在内存缓存中的记录。
    """

    versions: tuple[Version, ...]
    expires_at: float


class VersionCache:
    """
    进程内的 crate 版本列表缓存；每条记录在 TTL 到期后失效（读取时惰性淘汰）。
    """

    def __init__(self, ttl_s: float = DEFAULT_TTL_S, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_s = ttl_s
        self._clock = clock
        self._entries: dict[tuple[str, str], CacheEntry] = {}

    def get(self, name: str, *, scope: str = "") -> list[Version] | None:
        """
        获取缓存的版本列表；不存在或已过期时返回 None。
        """
        key = (scope, name)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return list(entry.versions)

    def set(self, name: str, versions: list[Version], *, scope: str = "") -> None:
        """
        写入（或替换）缓存记录，并重新开始计时。
        """
        self._entries[(scope, name)] = CacheEntry(
            versions=tuple(versions),
            expires_at=self._clock() + self._ttl_s,
        )

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
