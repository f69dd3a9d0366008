"""
张量模块

包含:
- tensor.py: Tensor值（扁平buffer + 形状/设备/元素类型）
- functional.py: zeros, arange, reshape, transpose, add, scale
"""

from stream_engine.ops.tensor import Tensor
from stream_engine.ops.functional import (
    zeros,
    arange,
    reshape,
    transpose,
    add,
    scale,
)

__all__ = [
    "Tensor",
    "zeros",
    "arange",
    "reshape",
    "transpose",
    "add",
    "scale",
]
