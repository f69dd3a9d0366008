"""
异常定义模块

所有错误均为同步、不可重试的调用方编程错误，直接抛给调用方处理。
"""

from __future__ import annotations


class StreamEngineError(Exception):
    """stream_engine所有异常的基类"""


class InvalidShape(StreamEngineError, ValueError):
    """构造张量时出现非正维度"""


class InvalidRange(StreamEngineError, ValueError):
    """arange的步长为0或区间为空"""


class ShapeMismatch(StreamEngineError, ValueError):
    """逐元素运算、reshape或位置编码注入时形状不兼容"""


class BatchSizeMismatch(ShapeMismatch):
    """输入batch超过StreamingState的batch（仅在严格模式下抛出）"""


class UnsupportedTranspose(StreamEngineError, ValueError):
    """transpose只支持3维张量的(1, 2)轴对"""


class InvalidConfiguration(StreamEngineError, ValueError):
    """构造时配置非法，例如未知的位置编码类型"""


class UninitializedComponent(StreamEngineError, RuntimeError):
    """在异步初始化完成之前调用了forward"""
