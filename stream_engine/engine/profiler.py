"""
轻量级性能分析工具

为StreamingRuntime的forward等阶段提供计时和计数。
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Union


@dataclass
class TimingStats:
    """单个计时项的累计统计"""
    name: str
    total_time: float = 0.0
    count: int = 0
    min_time: float = float('inf')
    max_time: float = 0.0

    def add(self, duration: float) -> None:
        self.total_time += duration
        self.count += 1
        self.min_time = min(self.min_time, duration)
        self.max_time = max(self.max_time, duration)

    @property
    def avg_time(self) -> float:
        return self.total_time / self.count if self.count > 0 else 0.0

    def as_dict(self) -> Dict[str, float]:
        return {
            "total_time": self.total_time,
            "count": self.count,
            "avg_time": self.avg_time,
            "min_time": self.min_time if self.count > 0 else 0.0,
            "max_time": self.max_time,
        }

    def __repr__(self) -> str:
        if self.count == 0:
            return f"{self.name}: (no data)"
        return (f"{self.name}: count={self.count}, total={self.total_time:.4f}s, "
                f"avg={self.avg_time * 1000:.2f}ms, "
                f"min={self.min_time * 1000:.2f}ms, max={self.max_time * 1000:.2f}ms")


class SimpleProfiler:
    """
    简单性能分析器

    用法:
        profiler = SimpleProfiler()

        with profiler.record("forward"):
            outputs = model(x, state)
        profiler.increment("frames", x.shape[1])

        profiler.log_summary(logger)
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._stats: Dict[str, TimingStats] = {}
        self._counters: Dict[str, int] = defaultdict(int)

    @contextmanager
    def record(self, name: str) -> Iterator[None]:
        """记录代码块的执行时间，代码块抛出异常时同样计时"""
        if not self.enabled:
            yield
            return

        start = time.perf_counter()
        try:
            yield
        finally:
            stats = self._stats.setdefault(name, TimingStats(name=name))
            stats.add(time.perf_counter() - start)

    def increment(self, name: str, value: int = 1) -> None:
        if self.enabled:
            self._counters[name] += value

    def get_stats(self, name: str) -> Optional[TimingStats]:
        return self._stats.get(name)

    def summary(self) -> Dict[str, Union[Dict[str, float], Dict[str, int]]]:
        """字典形式的统计摘要，计数器放在"counters"键下"""
        result: Dict[str, Union[Dict[str, float], Dict[str, int]]] = {
            name: stats.as_dict() for name, stats in self._stats.items()
        }
        if self._counters:
            result["counters"] = dict(self._counters)
        return result

    def log_summary(self, logger: logging.Logger, level: int = logging.INFO) -> None:
        """按总耗时降序输出到logger"""
        for stats in sorted(self._stats.values(), key=lambda s: s.total_time, reverse=True):
            logger.log(level, repr(stats))
        for name, value in self._counters.items():
            logger.log(level, f"{name}: {value}")

    def reset(self) -> None:
        self._stats.clear()
        self._counters.clear()


class DummyProfiler:
    """关闭profiling时使用的空实现"""

    enabled = False

    @contextmanager
    def record(self, name: str) -> Iterator[None]:
        yield

    def increment(self, name: str, value: int = 1) -> None:
        pass

    def get_stats(self, name: str) -> Optional[TimingStats]:
        return None

    def summary(self) -> Dict:
        return {}

    def log_summary(self, logger: logging.Logger, level: int = logging.INFO) -> None:
        pass

    def reset(self) -> None:
        pass


def create_profiler(enabled: bool = True) -> Union[SimpleProfiler, DummyProfiler]:
    """
    创建Profiler实例

    Args:
        enabled: 是否启用

    Returns:
        启用时为SimpleProfiler，否则为DummyProfiler
    """
    if enabled:
        return SimpleProfiler(enabled=True)
    return DummyProfiler()
