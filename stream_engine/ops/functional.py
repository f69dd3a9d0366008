"""
张量运算模块

Tensor上的纯函数: zeros, arange, reshape, transpose, add, scale。
除reshape返回视图外，所有运算都产生新的buffer。
"""

from __future__ import annotations

import math

import torch

from stream_engine.errors import (
    InvalidRange,
    InvalidShape,
    ShapeMismatch,
    UnsupportedTranspose,
)
from stream_engine.ops.tensor import Tensor
from stream_engine.tensor_types import (
    INFER_DIM,
    ShapeLike,
    check_device,
    check_same_shape,
    torch_dtype,
)


def zeros(
    shape: ShapeLike,
    dtype: str = "float32",
    device: str = "cpu",
) -> Tensor:
    """
    创建全零张量

    Raises:
        InvalidShape: 任一维度 <= 0
    """
    shape = tuple(int(d) for d in shape)
    for dim in shape:
        if dim <= 0:
            raise InvalidShape(f"维度必须为正，得到形状{list(shape)}")
    check_device(device)

    buffer = torch.zeros(math.prod(shape), dtype=torch_dtype(dtype))
    return Tensor(buffer, shape, device=device, dtype=dtype)


def arange(
    start: float,
    stop: float,
    step: float = 1,
    dtype: str = "float32",
    device: str = "cpu",
) -> Tensor:
    """
    一维等差序列: element[i] = start + i * step, 共 ceil((stop - start) / step) 个

    int32时数值四舍五入。

    Raises:
        InvalidRange: step为0，或区间内没有元素
    """
    if step == 0:
        raise InvalidRange("arange的step不能为0")

    length = math.ceil((stop - start) / step)
    if length <= 0:
        raise InvalidRange(
            f"arange区间为空: start={start}, stop={stop}, step={step}"
        )

    # 先在float64下计算，避免整数步长累积误差
    values = start + torch.arange(length, dtype=torch.float64) * step
    if dtype == "int32":
        values = values.round()
    return Tensor(values.to(torch_dtype(dtype)), (length,), device=device, dtype=dtype)


def reshape(tensor: Tensor, new_shape: ShapeLike) -> Tensor:
    """
    改变形状，结果与输入共享存储（视图）

    new_shape中最多一个维度为-1，其大小由 numel / prod(其余维度) 推断。

    Raises:
        ShapeMismatch: 多于一个-1、非正维度、无法整除或元素总数不一致
    """
    new_shape = [int(d) for d in new_shape]
    numel = tensor.numel()

    infer_idx = None
    known = 1
    for i, dim in enumerate(new_shape):
        if dim == INFER_DIM:
            if infer_idx is not None:
                raise ShapeMismatch("reshape中只能有一个维度被推断")
            infer_idx = i
        elif dim <= 0:
            raise ShapeMismatch(f"reshape的目标维度必须为正，得到{new_shape}")
        else:
            known *= dim

    if infer_idx is not None:
        if numel % known != 0:
            raise ShapeMismatch(
                f"无法将大小为{numel}的张量reshape为{new_shape}"
            )
        new_shape[infer_idx] = numel // known

    if math.prod(new_shape) != numel:
        raise ShapeMismatch(
            f"无法将大小为{numel}的张量reshape为{new_shape}"
        )

    return Tensor(tensor.buffer, new_shape, device=tensor.device, dtype=tensor.dtype)


def transpose(tensor: Tensor, dim0: int, dim1: int) -> Tensor:
    """
    交换3维张量的第1、2轴: (B, T, C) <-> (B, C, T)

    结果是物理重排后的新buffer，不是视图。

    Raises:
        UnsupportedTranspose: 非3维张量或轴对不是(1, 2)
    """
    if tensor.ndim != 3:
        raise UnsupportedTranspose(
            f"transpose目前只支持3维张量，得到{tensor.ndim}维"
        )
    if {dim0, dim1} != {1, 2}:
        raise UnsupportedTranspose(f"transpose轴({dim0}, {dim1})未实现")

    permuted = tensor.data.transpose(1, 2).contiguous()
    return Tensor(
        permuted.view(-1),
        tuple(permuted.shape),
        device=tensor.device,
        dtype=tensor.dtype,
    )


def add(a: Tensor, b: Tensor) -> Tensor:
    """
    逐元素相加，不广播

    结果沿用a的元素类型与设备标签。

    Raises:
        ShapeMismatch: 形状不一致
    """
    check_same_shape(a, b, name="add的操作数")
    # 在提升后的类型下相加，再转回a的元素类型
    result = (a.buffer + b.buffer).to(a.buffer.dtype)
    return Tensor(result, a.shape, device=a.device, dtype=a.dtype)


def scale(tensor: Tensor, scalar: float) -> Tensor:
    """逐元素乘以标量，int32结果向零截断"""
    if tensor.buffer.is_floating_point():
        result = tensor.buffer * scalar
    else:
        result = torch.trunc(tensor.buffer.to(torch.float64) * scalar)
    return Tensor(result, tensor.shape, device=tensor.device, dtype=tensor.dtype)

