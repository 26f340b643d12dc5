"""
同時実行ガード (Concurrency Guard)

SKU 単位のロック。同じ SKU を引き当てる処理だけが直列化され、
異なる SKU の注文は完全に並行して進む。

複数 SKU のロックは常に SKU 名でソートした順に取得する。
A→B と B→A の順で引き当てる2つの注文がデッドロックしないため。

このロックは同一プロセス内の直列化のみ。プロセスをまたぐ
oversell 防止は在庫台帳の条件付き UPDATE が担う。
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

from .errors import ConcurrencyTimeoutError

logger = logging.getLogger(__name__)


class ConcurrencyGuard:
    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}
        # SKU ごとの利用者数 (保持中 + 待機中)。0 になったらロックを捨てる。
        self._users: dict[str, int] = {}

    def _checkout(self, sku: str) -> asyncio.Lock:
        lock = self._locks.get(sku)
        if lock is None:
            lock = self._locks[sku] = asyncio.Lock()
        self._users[sku] = self._users.get(sku, 0) + 1
        return lock

    def _checkin(self, sku: str) -> None:
        self._users[sku] -= 1
        if self._users[sku] == 0:
            del self._users[sku]
            del self._locks[sku]

    def lock_count(self) -> int:
        """現在ロックを保持または待機している SKU の数"""
        return len(self._locks)

    def is_locked(self, sku: str) -> bool:
        lock = self._locks.get(sku)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, skus: Iterable[str], timeout: float | None = None) -> AsyncIterator[None]:
        """
        すべての SKU のロックを1つの期限内で取得する。

        期限内に取れなければ、取得済みのロックを解放してから
        ConcurrencyTimeoutError を送出する。
        """
        ordered = sorted(set(skus))
        timeout = self.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        acquired: list[asyncio.Lock] = []
        checked_out: list[str] = []
        try:
            for sku in ordered:
                lock = self._checkout(sku)
                checked_out.append(sku)
                remaining = max(deadline - loop.time(), 0)
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=remaining)
                except asyncio.TimeoutError:
                    logger.warning("Timed out waiting for lock on %s after %ss", sku, timeout)
                    raise ConcurrencyTimeoutError([sku], timeout) from None
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for sku in checked_out:
                self._checkin(sku)
