"""
Snowflake ID 生成器模块

所有表的主键使用 Snowflake ID：按时间递增，审计日志和清扫记录可以直接按 id 排序。

ID 结构（64 位）：
- 41 位：时间戳（毫秒，从 2024-01-01 开始）
- 10 位：节点 ID（0-1023，每个进程实例不同）
- 12 位：序列号（同一毫秒内的序号）
"""
from __future__ import annotations

import threading
import time

from app.core.config import settings

_EPOCH_MS = 1704067200000
_MAX_CLOCK_DRIFT_MS = 5000


class Snowflake:
    """线程安全的 64 位 ID 生成器"""

    def __init__(self, *, node_id: int) -> None:
        if not (0 <= node_id <= 1023):
            raise ValueError("SNOWFLAKE_NODE_ID must be in [0, 1023]")
        self._node_id = node_id
        self._lock = threading.Lock()
        self._last_ts = -1
        self._seq = 0

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    def next_id(self) -> int:
        """
        生成下一个 ID

        Raises:
            RuntimeError: 时钟回拨超过 5 秒时（拒绝生成，避免重复 ID）
        """
        with self._lock:
            ts = self._now_ms()
            if ts < self._last_ts:
                drift = self._last_ts - ts
                if drift > _MAX_CLOCK_DRIFT_MS:
                    raise RuntimeError(
                        f"Clock moved backwards by {drift}ms. "
                        "Refusing to generate IDs to prevent duplicates."
                    )
                ts = self._wait_until(self._last_ts)

            if ts == self._last_ts:
                self._seq = (self._seq + 1) & 0xFFF
                if self._seq == 0:
                    # 当前毫秒序列号用尽
                    ts = self._wait_until(self._last_ts + 1)
            else:
                self._seq = 0

            self._last_ts = ts
            return ((ts - _EPOCH_MS) << 22) | (self._node_id << 12) | self._seq

    @classmethod
    def _wait_until(cls, target_ms: int) -> int:
        ts = cls._now_ms()
        while ts < target_ms:
            time.sleep(0.001)
            ts = cls._now_ms()
        return ts


_GENERATOR: Snowflake | None = None


def generate_id() -> int:
    """生成唯一 ID（模型主键的 default_factory）"""
    global _GENERATOR
    if _GENERATOR is None:
        _GENERATOR = Snowflake(node_id=settings.SNOWFLAKE_NODE_ID)
    return _GENERATOR.next_id()
