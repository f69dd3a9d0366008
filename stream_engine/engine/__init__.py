"""
运行时模块

包含:
- runtime.py: 异步初始化的StreamingRuntime
- profiler.py: 性能分析工具
"""

from stream_engine.engine.profiler import (
    SimpleProfiler,
    DummyProfiler,
    TimingStats,
    create_profiler,
)
from stream_engine.engine.runtime import StreamingRuntime, create_runtime

__all__ = [
    "SimpleProfiler",
    "DummyProfiler",
    "TimingStats",
    "create_profiler",
    "StreamingRuntime",
    "create_runtime",
]
