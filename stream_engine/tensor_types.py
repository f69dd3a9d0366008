"""
张量类型定义模块

提供元素类型/设备标签的别名、与torch dtype的映射以及形状检查工具。

约定:
- B: batch size
- T: 时间步（序列长度）
- C: 通道（特征维度）
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, FrozenSet, Literal, Sequence, Tuple

import torch

from stream_engine.errors import InvalidConfiguration, ShapeMismatch

if TYPE_CHECKING:
    from stream_engine.ops.tensor import Tensor


# 元素类型标签
ElementType = Literal["float32", "float64", "int32"]

# 设备标签（仅作为元数据携带，计算始终在CPU上）
DeviceTag = Literal["cpu", "gpu"]

# 轴布局: (B, T, C) 或 (B, C, T)
LayoutKind = Literal["sequence_first", "channel_first"]

# 位置编码类型
PositionalEmbeddingKind = Literal["sin", "rope", "sin_rope", "none"]

# 形状
Shape = Tuple[int, ...]
ShapeLike = Sequence[int]

# reshape中表示"自动推断"的维度
INFER_DIM = -1

ELEMENT_TYPES: FrozenSet[str] = frozenset({"float32", "float64", "int32"})
DEVICE_TAGS: FrozenSet[str] = frozenset({"cpu", "gpu"})
LAYOUT_KINDS: FrozenSet[str] = frozenset({"sequence_first", "channel_first"})
POSITIONAL_EMBEDDINGS: FrozenSet[str] = frozenset({"sin", "rope", "sin_rope", "none"})

# 需要由shell注入正弦编码的类型
SIN_EMBEDDINGS: FrozenSet[str] = frozenset({"sin", "sin_rope"})
# 需要由层单元自行应用旋转编码的类型
ROPE_EMBEDDINGS: FrozenSet[str] = frozenset({"rope", "sin_rope"})

_DTYPE_MAP: Dict[str, torch.dtype] = {
    "float32": torch.float32,
    "float64": torch.float64,
    "int32": torch.int32,
}
_DTYPE_REVERSE: Dict[torch.dtype, str] = {v: k for k, v in _DTYPE_MAP.items()}


def torch_dtype(element_type: str) -> torch.dtype:
    """元素类型标签 -> torch.dtype"""
    try:
        return _DTYPE_MAP[element_type]
    except KeyError:
        raise InvalidConfiguration(
            f"dtype必须是{sorted(ELEMENT_TYPES)}之一，得到: {element_type}"
        ) from None


def element_type_of(dtype: torch.dtype) -> str:
    """
    torch.dtype -> 元素类型标签

    未列出的浮点类型归为float32，整数类型归为int32。
    """
    if dtype in _DTYPE_REVERSE:
        return _DTYPE_REVERSE[dtype]
    if dtype.is_floating_point:
        return "float32"
    return "int32"


def check_device(device: str) -> str:
    """检查设备标签"""
    if device not in DEVICE_TAGS:
        raise InvalidConfiguration(
            f"device必须是{sorted(DEVICE_TAGS)}之一，得到: {device}"
        )
    return device


def check_tensor_rank(
    tensor: "Tensor",
    expected_rank: int,
    name: str = "tensor",
) -> None:
    """
    检查张量维度数量

    Args:
        tensor: 要检查的张量
        expected_rank: 期望的维度数
        name: 张量名称（用于错误信息）

    Raises:
        ShapeMismatch: 如果维度不匹配
    """
    if tensor.ndim != expected_rank:
        raise ShapeMismatch(
            f"{name}应该有{expected_rank}维，但得到{tensor.ndim}维, "
            f"形状为{list(tensor.shape)}"
        )


def check_same_shape(a: "Tensor", b: "Tensor", name: str = "operands") -> None:
    """检查两个张量形状完全一致（不做广播）"""
    if a.shape != b.shape:
        raise ShapeMismatch(
            f"{name}形状必须一致，得到{list(a.shape)}和{list(b.shape)}"
        )
