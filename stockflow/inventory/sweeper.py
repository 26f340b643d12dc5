"""
期限切れ引き当てのスイーパー

Coordinator が引き当てと確定の間でクラッシュした場合、
引き当ては HELD のまま残る。このループが定期的に期限切れの
引き当てを解放し、在庫が永久に塩漬けになるのを防ぐ。
"""

import asyncio
import logging

from ..errors import PersistenceError
from .ledger import InventoryLedger

logger = logging.getLogger(__name__)


async def run_sweeper(
    ledger: InventoryLedger,
    interval: float,
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで interval 秒ごとに回収する。"""
    logger.info("Reservation sweeper started (interval=%ss)", interval)
    while not shutdown_event.is_set():
        try:
            await ledger.sweep_expired()
        except PersistenceError:
            logger.exception("Failed to sweep expired reservations")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Reservation sweeper stopped")
