"""
位置编码模块

- create_sin_embedding: 固定正弦位置编码，由shell注入到输入中
- RotaryEmbedding: 旋转位置编码 (RoPE)，由注意力层单元作用于Q/K
"""

from __future__ import annotations

from typing import Sequence, Tuple

import torch
import torch.nn as nn

from stream_engine.errors import InvalidConfiguration, InvalidShape
from stream_engine.ops.tensor import Tensor
from stream_engine.tensor_types import check_tensor_rank, torch_dtype


def build_positions(
    batch_size: int,
    seq_len: int,
    offsets: Sequence[int],
    device: str = "cpu",
) -> Tensor:
    """
    构造绝对位置张量: position[b, t] = t + offsets[b]

    Args:
        batch_size: B
        seq_len: T
        offsets: 每行的起始offset，长度为B
        device: 设备标签

    Returns:
        位置张量, shape [B, T], float64
    """
    base = torch.arange(seq_len, dtype=torch.float64).unsqueeze(0)
    start = torch.tensor(list(offsets), dtype=torch.float64).view(batch_size, 1)
    return Tensor.from_torch(base + start, device=device, dtype="float64")


def create_sin_embedding(
    positions: Tensor,
    dim: int,
    max_period: float = 10000.0,
    dtype: str = "float32",
) -> Tensor:
    """
    生成正弦位置编码

    对每个位置p和偶数下标d:
        emb[..., d]   = sin(p / max_period^(d/dim))
        emb[..., d+1] = cos(p / max_period^(d/dim))
    dim为奇数时最后一个正弦没有对应的余弦位置。

    Args:
        positions: 位置张量, shape [B, T]
        dim: 编码维度
        max_period: 最大周期
        dtype: 输出元素类型

    Returns:
        位置编码, shape [B, T, dim]
    """
    check_tensor_rank(positions, 2, name="positions")
    if dim <= 0:
        raise InvalidShape(f"位置编码维度必须为正，得到: {dim}")

    # 在float64下计算，最后再转换类型
    pos = positions.data.to(torch.float64).unsqueeze(-1)  # [B, T, 1]
    even = torch.arange(0, dim, 2, dtype=torch.float64)  # [ceil(dim/2)]
    angles = pos / (max_period ** (even / dim))  # [B, T, ceil(dim/2)]

    batch_size, seq_len = positions.shape
    emb = torch.zeros(batch_size, seq_len, dim, dtype=torch.float64)
    emb[..., 0::2] = torch.sin(angles)
    emb[..., 1::2] = torch.cos(angles)[..., : dim // 2]

    return Tensor.from_torch(emb.to(torch_dtype(dtype)), device=positions.device, dtype=dtype)


class RotaryEmbedding(nn.Module):
    """
    旋转位置编码模块

    直接按绝对位置计算cos/sin，位置可以来自任意streaming offset，
    因此不预计算固定长度的表。RoPE作用于head_dim的全部维度（前后两半配对）。
    """

    def __init__(self, head_dim: int, max_period: float = 10000.0):
        """
        Args:
            head_dim: 每个注意力头的维度，必须为偶数
            max_period: RoPE的基础频率
        """
        super().__init__()
        if head_dim % 2 != 0:
            raise InvalidConfiguration(f"RoPE要求head_dim为偶数，得到: {head_dim}")
        self.head_dim = head_dim
        self.max_period = max_period

        # 逆频率: 1 / (max_period^(2i/d)) for i = 0, 1, ..., d/2-1
        inv_freq = 1.0 / (
            max_period ** (torch.arange(0, head_dim, 2, dtype=torch.float64) / head_dim)
        )
        self.register_buffer("inv_freq", inv_freq, persistent=False)

    def forward(
        self,
        q: torch.Tensor,
        k: torch.Tensor,
        positions: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        对Q和K应用旋转位置编码

        Args:
            q: Query, shape [batch, num_heads, seq_len, head_dim]
            k: Key, shape [batch, num_heads, seq_len, head_dim]
            positions: 绝对位置, shape [batch, seq_len]

        Returns:
            (q_rotated, k_rotated)
        """
        # [batch, seq_len, head_dim/2]
        freqs = positions.to(torch.float64).unsqueeze(-1) * self.inv_freq
        emb = torch.cat([freqs, freqs], dim=-1)

        # [batch, 1, seq_len, head_dim]
        cos = emb.cos().to(q.dtype).unsqueeze(1)
        sin = emb.sin().to(q.dtype).unsqueeze(1)

        return self._apply_rotary(q, cos, sin), self._apply_rotary(k, cos, sin)

    def _apply_rotary(self, x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
        """
        x' = x * cos + rotate_half(x) * sin

        rotate_half: [x1, x2] -> [-x2, x1]
        """
        half = self.head_dim // 2
        x1 = x[..., :half]
        x2 = x[..., half:]
        rotated = torch.cat([-x2, x1], dim=-1)
        return x * cos + rotated * sin
