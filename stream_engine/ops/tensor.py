"""
张量值模块

Tensor是扁平元素缓冲区上的形状视图，附带设备与元素类型标签。

存储所有权:
- buffer始终是一维、连续的CPU torch.Tensor
- reshape的结果与源张量共享同一个buffer对象（视图，互为别名）
- transpose总是分配新的buffer（拷贝），不能依赖通过别名修改
"""

from __future__ import annotations

import math
from typing import Any, List, Optional, Sequence

import torch

from stream_engine.errors import InvalidShape, ShapeMismatch
from stream_engine.tensor_types import (
    Shape,
    ShapeLike,
    check_device,
    element_type_of,
    torch_dtype,
)


class Tensor:
    """
    不可变形状的N维张量值

    Attributes:
        buffer: 扁平元素缓冲区, shape [numel]
        shape: 维度元组
        device: 设备标签, "cpu" 或 "gpu"
        dtype: 元素类型标签, "float32" / "float64" / "int32"
    """

    __slots__ = ("buffer", "shape", "device", "dtype")

    def __init__(
        self,
        buffer: torch.Tensor,
        shape: ShapeLike,
        device: str = "cpu",
        dtype: Optional[str] = None,
    ):
        """
        Args:
            buffer: 一维torch张量
            shape: 目标形状，元素总数必须等于buffer长度
            device: 设备标签
            dtype: 元素类型标签，None时取buffer自身的类型
        """
        if buffer.dim() != 1:
            raise ShapeMismatch(f"buffer必须是一维的，得到形状{tuple(buffer.shape)}")

        shape = tuple(int(d) for d in shape)
        for dim in shape:
            if dim <= 0:
                raise InvalidShape(f"维度必须为正，得到形状{list(shape)}")
        expected = math.prod(shape)
        if buffer.numel() != expected:
            raise ShapeMismatch(
                f"buffer长度{buffer.numel()}与形状{list(shape)}的元素数{expected}不一致"
            )

        if dtype is None:
            dtype = element_type_of(buffer.dtype)
        target = torch_dtype(dtype)
        if buffer.dtype != target:
            buffer = buffer.to(target)

        self.buffer = buffer
        self.shape: Shape = shape
        self.device = check_device(device)
        self.dtype = dtype

    @classmethod
    def from_torch(
        cls,
        data: torch.Tensor,
        device: str = "cpu",
        dtype: Optional[str] = None,
    ) -> "Tensor":
        """从任意形状的torch张量创建（非连续张量会被拷贝）"""
        data = data.detach().cpu().contiguous()
        return cls(data.view(-1), tuple(data.shape), device=device, dtype=dtype)

    @classmethod
    def from_list(
        cls,
        values: Sequence[Any],
        shape: Optional[ShapeLike] = None,
        dtype: str = "float32",
        device: str = "cpu",
    ) -> "Tensor":
        """
        从Python列表创建

        Args:
            values: 嵌套或扁平的数值列表
            shape: 可选形状，None时取嵌套列表的形状
            dtype: 元素类型标签
            device: 设备标签
        """
        data = torch.tensor(values, dtype=torch_dtype(dtype))
        if shape is None:
            shape = tuple(data.shape)
        return cls(data.reshape(-1).contiguous(), shape, device=device, dtype=dtype)

    @property
    def data(self) -> torch.Tensor:
        """按shape查看buffer（视图，不拷贝）"""
        return self.buffer.view(self.shape)

    @property
    def ndim(self) -> int:
        return len(self.shape)

    def numel(self) -> int:
        return self.buffer.numel()

    def tolist(self) -> List[Any]:
        return self.data.tolist()

    def shares_storage(self, other: "Tensor") -> bool:
        """是否与另一个张量共享底层存储"""
        return (
            self.buffer.untyped_storage().data_ptr()
            == other.buffer.untyped_storage().data_ptr()
        )

    def with_data(self, data: torch.Tensor) -> "Tensor":
        """用新的数据创建张量，保留本张量的设备与元素类型标签"""
        return Tensor.from_torch(data, device=self.device, dtype=self.dtype)

    def astype(self, dtype: str) -> "Tensor":
        """转换元素类型，类型相同时返回自身"""
        if dtype == self.dtype:
            return self
        return Tensor(self.buffer, self.shape, device=self.device, dtype=dtype)

    def clone(self) -> "Tensor":
        return Tensor(self.buffer.clone(), self.shape, self.device, self.dtype)

    def equal(self, other: "Tensor") -> bool:
        """形状、标签和元素值完全相同"""
        return (
            self.shape == other.shape
            and self.dtype == other.dtype
            and self.device == other.device
            and torch.equal(self.buffer, other.buffer)
        )

    def allclose(self, other: "Tensor", atol: float = 1e-6) -> bool:
        """形状相同且元素值在容差内相等"""
        if self.shape != other.shape:
            return False
        return torch.allclose(
            self.buffer.to(torch.float64), other.buffer.to(torch.float64), atol=atol
        )

    def __repr__(self) -> str:
        return (f"Tensor(shape={list(self.shape)}, dtype={self.dtype}, "
                f"device={self.device})")
