"""
会话缓存模块 - 带滑动过期时间的内存字典。

每个条目都挂着一个过期定时器：
- get() 命中或 set() 写入时重置定时器（滑动窗口，默认 5 分钟）
- 定时器到期 → 先从字典中摘除条目，再调用 on_expire(key, value)
- clear() 对所有存活条目执行同样的"摘除 + 回调"，每个条目恰好回调一次

【Java 开发者类比】
- 相当于 Caffeine 的 expireAfterAccess + removalListener
- scheduler 相当于 ScheduledExecutorService.schedule()，返回值可以 cancel()

【测试提示】
scheduler 和 clock 都可以注入，测试中用模拟时钟驱动过期，无需真实等待。
"""

import asyncio
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Generic, Iterator, TypeVar

from loguru import logger

T = TypeVar("T")

# scheduler(delay_seconds, callback) -> 带 cancel() 的句柄
Scheduler = Callable[[float, Callable[[], None]], Any]


@dataclass
class CacheEntry(Generic[T]):
    """缓存条目。timer 是当前有效的过期定时器句柄。"""
    value: T
    last_activity: float
    timer: Any = None


def _loop_call_later(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


def _loop_time() -> float:
    return asyncio.get_running_loop().time()


class SessionCache(Generic[T]):
    """
    滑动 TTL 缓存。

    参数:
        on_expire: 条目被淘汰时的回调 (key, value)，过期和 clear() 都会触发，delete() 不触发
        ttl: 空闲多少秒后淘汰
        scheduler: 定时器工厂，默认使用当前事件循环的 call_later
        clock: 单调时钟，默认使用当前事件循环的 time()，与默认 scheduler 同源
    """

    def __init__(
        self,
        on_expire: Callable[[str, T], None],
        ttl: float = 300.0,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.on_expire = on_expire
        self.ttl = ttl
        self._schedule = scheduler or _loop_call_later
        self._clock = clock or _loop_time
        self._entries: dict[str, CacheEntry[T]] = {}

    def get(self, key: str) -> T | None:
        """读取条目；命中时重置过期定时器，未命中无副作用。"""
        entry = self._entries.get(key)
        if entry is None:
            return None
        self._arm(key, entry)
        return entry.value

    def set(self, key: str, value: T) -> None:
        """写入或替换条目，旧条目的定时器先被取消。"""
        old = self._entries.get(key)
        if old and old.timer:
            old.timer.cancel()
            old.timer = None
        entry = CacheEntry(value=value, last_activity=self._clock())
        self._entries[key] = entry
        self._arm(key, entry)

    def peek(self, key: str) -> T | None:
        """读取条目但不刷新过期时间。"""
        entry = self._entries.get(key)
        return entry.value if entry else None

    def touch(self, key: str) -> bool:
        """只刷新过期时间，不返回值。条目不存在时返回 False。"""
        entry = self._entries.get(key)
        if entry is None:
            return False
        self._arm(key, entry)
        return True

    def delete(self, key: str) -> T | None:
        """删除条目（不触发 on_expire），返回被删除的值。"""
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        if entry.timer:
            entry.timer.cancel()
            entry.timer = None
        return entry.value

    def clear(self) -> None:
        """
        淘汰所有条目。

        先整体摘除再逐个回调，回调里再访问缓存看到的已经是空字典。
        """
        entries = list(self._entries.items())
        self._entries.clear()
        for _, entry in entries:
            if entry.timer:
                entry.timer.cancel()
                entry.timer = None
        for key, entry in entries:
            self._evict(key, entry.value)

    def last_activity(self, key: str) -> float | None:
        entry = self._entries.get(key)
        return entry.last_activity if entry else None

    @property
    def size(self) -> int:
        return len(self._entries)

    def values(self) -> list[T]:
        return [e.value for e in self._entries.values()]

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    def __contains__(self, key: object) -> bool:
        # 只检查存在性，不刷新
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    # ------------------------------------------------------------------
    # 内部实现
    # ------------------------------------------------------------------

    def _arm(self, key: str, entry: CacheEntry[T]) -> None:
        if entry.timer:
            entry.timer.cancel()
        entry.last_activity = self._clock()
        entry.timer = self._schedule(self.ttl, partial(self._expire, key, entry))

    def _expire(self, key: str, entry: CacheEntry[T]) -> None:
        # 条目已被替换或删除时，旧定时器什么都不做
        if self._entries.get(key) is not entry:
            return
        del self._entries[key]
        entry.timer = None
        logger.debug(f"Session {key} expired after {self.ttl}s idle")
        self._evict(key, entry.value)

    def _evict(self, key: str, value: T) -> None:
        try:
            self.on_expire(key, value)
        except Exception as e:
            logger.error(f"Eviction callback failed for {key}: {e}")
