"""
基础层与层单元模块

- Linear / Identity: ProjectedTransformer的输入输出投影
- RMSNorm: 层单元内部的Pre-Norm
- 层单元: IdentityUnit, AttentionUnit, FeedForwardUnit, TransformerLayerUnit

层单元是shell中可替换的计算单元，契约为:
    forward(x[B, T, C], positions[B, T] = None) -> [B, T, C]
所有参数冻结，不参与求导。
"""

from __future__ import annotations

import inspect
import math
from typing import TYPE_CHECKING, List, Optional, Protocol, runtime_checkable

import torch
import torch.nn as nn
import torch.nn.functional as F

from stream_engine.errors import ShapeMismatch
from stream_engine.ops.tensor import Tensor
from stream_engine.tensor_types import ROPE_EMBEDDINGS, check_tensor_rank, torch_dtype
from stream_engine.models.positional import RotaryEmbedding

if TYPE_CHECKING:
    from stream_engine.config import TransformerConfig


@runtime_checkable
class LayerUnit(Protocol):
    """形状保持的层单元接口"""

    def forward(self, x: Tensor, positions: Optional[Tensor] = None) -> Tensor:
        ...


def accepts_positions(unit: object) -> bool:
    """层单元的forward是否接受positions参数"""
    try:
        params = inspect.signature(unit.forward).parameters
    except (TypeError, ValueError):
        return False
    return "positions" in params or any(
        p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values()
    )


def make_generator(seed: Optional[int]) -> Optional[torch.Generator]:
    if seed is None:
        return None
    return torch.Generator().manual_seed(seed)


def _freeze(module: nn.Module) -> nn.Module:
    for p in module.parameters():
        p.requires_grad_(False)
    return module.eval()


class Linear(nn.Module):
    """
    最后一维上的稠密线性映射: y = x @ W^T (+ bias)

    权重形状 [out_features, in_features]，在 ±sqrt(2 / (in + out)) 内均匀初始化，
    bias初始化为0。累加在输入的元素类型下进行（int32输入在float64下累加后转回）。
    """

    def __init__(
        self,
        in_features: int,
        out_features: int,
        bias: bool = False,
        generator: Optional[torch.Generator] = None,
    ):
        """
        Args:
            in_features: 输入维度
            out_features: 输出维度
            bias: 是否带bias
            generator: 可选的随机数生成器（用于可复现初始化）
        """
        super().__init__()
        self.in_features = in_features
        self.out_features = out_features

        bound = math.sqrt(2.0 / (in_features + out_features))
        weight = (torch.rand(out_features, in_features, generator=generator) - 0.5) * 2 * bound
        self.weight = nn.Parameter(weight, requires_grad=False)
        if bias:
            self.bias = nn.Parameter(torch.zeros(out_features), requires_grad=False)
        else:
            self.register_parameter("bias", None)

    def forward(self, x: Tensor) -> Tensor:
        """
        Args:
            x: 输入, shape [..., in_features]
        Returns:
            输出, shape [..., out_features]，元素类型与设备标签同x
        """
        if x.shape[-1] != self.in_features:
            raise ShapeMismatch(
                f"Linear期望最后一维为{self.in_features}，得到形状{list(x.shape)}"
            )

        data = x.data
        compute_dtype = data.dtype if data.is_floating_point() else torch.float64
        out = torch.matmul(data.to(compute_dtype), self.weight.to(compute_dtype).t())
        if self.bias is not None:
            out = out + self.bias.to(compute_dtype)
        return x.with_data(out)

    def extra_repr(self) -> str:
        return (f"in_features={self.in_features}, out_features={self.out_features}, "
                f"bias={self.bias is not None}")


class Identity(nn.Module):
    """恒等映射，返回输入的拷贝"""

    def forward(self, x: Tensor) -> Tensor:
        return x.clone()


class RMSNorm(nn.Module):
    """
    Root Mean Square Layer Normalization

    公式: x * weight / sqrt(mean(x^2) + eps)
    """

    def __init__(self, hidden_dim: int, eps: float = 1e-5):
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(hidden_dim), requires_grad=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        # 在float32及以上精度下计算
        input_dtype = x.dtype
        x = x.to(torch.promote_types(input_dtype, torch.float32))
        variance = x.pow(2).mean(dim=-1, keepdim=True)
        x_normed = x * torch.rsqrt(variance + self.eps)
        return (self.weight.to(x.dtype) * x_normed).to(input_dtype)


class _ModuleUnit(nn.Module):
    """
    基于torch模块的层单元基类

    负责Tensor <-> torch.Tensor的转换与形状检查，子类实现_forward。
    """

    def forward(self, x: Tensor, positions: Optional[Tensor] = None) -> Tensor:
        """
        Args:
            x: 输入, shape [B, T, C]
            positions: 可选的绝对位置, shape [B, T]
        Returns:
            输出, shape [B, T, C]
        """
        check_tensor_rank(x, 3, name="层单元输入")
        d_model = getattr(self, "d_model", None)
        if d_model is not None and x.shape[-1] != d_model:
            raise ShapeMismatch(
                f"{self.__class__.__name__}期望通道数为{d_model}，得到形状{list(x.shape)}"
            )
        hidden = x.data.to(self._compute_dtype(x.data.dtype))
        pos = positions.data if positions is not None else None
        with torch.no_grad():
            out = self._forward(hidden, pos)
        return x.with_data(out)

    def _forward(self, hidden: torch.Tensor, positions: Optional[torch.Tensor]) -> torch.Tensor:
        raise NotImplementedError

    def _compute_dtype(self, input_dtype: torch.dtype) -> torch.dtype:
        """有参数时按参数类型计算，否则沿用输入的浮点类型"""
        for p in self.parameters():
            return p.dtype
        return input_dtype if input_dtype.is_floating_point else torch.float32


class IdentityUnit(_ModuleUnit):
    """占位层单元，原样返回输入"""

    def _forward(self, hidden: torch.Tensor, positions: Optional[torch.Tensor]) -> torch.Tensor:
        return hidden.clone()


class AttentionUnit(_ModuleUnit):
    """
    多头自注意力层单元 (Pre-Norm + 残差)

        hidden = hidden + o_proj(attn(norm(hidden)))

    注意力只在当前chunk内计算。causal时位置i只能看到j <= i，
    context不为None时再限制 i - j < context。
    传入rope时按绝对位置对Q/K应用旋转编码。
    """

    def __init__(
        self,
        d_model: int,
        num_heads: int,
        causal: bool = True,
        context: Optional[int] = None,
        rope: Optional[RotaryEmbedding] = None,
        generator: Optional[torch.Generator] = None,
    ):
        """
        Args:
            d_model: 模型宽度
            num_heads: 头数
            causal: 是否使用因果掩码
            context: 回看窗口
            rope: 可选的旋转位置编码
            generator: 可选的随机数生成器
        """
        super().__init__()
        self.d_model = d_model
        self.num_heads = num_heads
        self.head_dim = d_model // num_heads
        self.causal = causal
        self.context = context
        self.rope = rope
        self.scale = 1.0 / math.sqrt(self.head_dim)

        self.norm = RMSNorm(d_model)
        self.q_proj = nn.Linear(d_model, d_model, bias=False)
        self.k_proj = nn.Linear(d_model, d_model, bias=False)
        self.v_proj = nn.Linear(d_model, d_model, bias=False)
        self.o_proj = nn.Linear(d_model, d_model, bias=False)

        with torch.no_grad():
            for proj in (self.q_proj, self.k_proj, self.v_proj, self.o_proj):
                proj.weight.copy_(torch.randn(proj.weight.shape, generator=generator) * 0.02)
        _freeze(self)

    def _forward(self, hidden: torch.Tensor, positions: Optional[torch.Tensor]) -> torch.Tensor:
        batch_size, seq_len, _ = hidden.shape
        residual = hidden
        hidden = self.norm(hidden)

        # [B, T, C] -> [B, num_heads, T, head_dim]
        q = self.q_proj(hidden).view(batch_size, seq_len, self.num_heads, self.head_dim).transpose(1, 2)
        k = self.k_proj(hidden).view(batch_size, seq_len, self.num_heads, self.head_dim).transpose(1, 2)
        v = self.v_proj(hidden).view(batch_size, seq_len, self.num_heads, self.head_dim).transpose(1, 2)

        if self.rope is not None and positions is not None:
            q, k = self.rope(q, k, positions)

        attn_weights = torch.matmul(q, k.transpose(-2, -1)) * self.scale
        mask = self._make_mask(seq_len, hidden.dtype)
        if mask is not None:
            attn_weights = attn_weights + mask
        attn_weights = F.softmax(attn_weights, dim=-1)

        attn_output = torch.matmul(attn_weights, v)
        attn_output = attn_output.transpose(1, 2).contiguous().view(batch_size, seq_len, self.d_model)

        return residual + self.o_proj(attn_output)

    def _make_mask(self, seq_len: int, dtype: torch.dtype) -> Optional[torch.Tensor]:
        """
        构造注意力掩码 [T, T]，不允许的位置为-inf

        对角线总是可见，因此每行至少有一个有效位置。
        """
        if not self.causal and self.context is None:
            return None

        query_idx = torch.arange(seq_len).unsqueeze(1)
        key_idx = torch.arange(seq_len).unsqueeze(0)
        allowed = torch.ones(seq_len, seq_len, dtype=torch.bool)
        if self.causal:
            allowed &= key_idx <= query_idx
        if self.context is not None:
            allowed &= (query_idx - key_idx) < self.context

        mask = torch.zeros(seq_len, seq_len, dtype=dtype)
        return mask.masked_fill(~allowed, float("-inf"))


class FeedForwardUnit(_ModuleUnit):
    """
    前馈层单元 (Pre-Norm + 残差)

        hidden = hidden + linear2(GELU(linear1(norm(hidden))))
    """

    def __init__(
        self,
        d_model: int,
        dim_feedforward: int,
        generator: Optional[torch.Generator] = None,
    ):
        """
        Args:
            d_model: 模型宽度
            dim_feedforward: 中间层维度
            generator: 可选的随机数生成器
        """
        super().__init__()
        self.d_model = d_model
        self.dim_feedforward = dim_feedforward

        self.norm = RMSNorm(d_model)
        self.linear1 = nn.Linear(d_model, dim_feedforward, bias=True)
        self.linear2 = nn.Linear(dim_feedforward, d_model, bias=True)

        with torch.no_grad():
            for proj in (self.linear1, self.linear2):
                proj.weight.copy_(torch.randn(proj.weight.shape, generator=generator) * 0.02)
                proj.bias.zero_()
        _freeze(self)

    def _forward(self, hidden: torch.Tensor, positions: Optional[torch.Tensor]) -> torch.Tensor:
        return hidden + self.linear2(F.gelu(self.linear1(self.norm(hidden))))


class TransformerLayerUnit(_ModuleUnit):
    """
    完整的Transformer层单元: AttentionUnit后接FeedForwardUnit
    """

    def __init__(
        self,
        d_model: int,
        num_heads: int,
        dim_feedforward: int,
        causal: bool = True,
        context: Optional[int] = None,
        rope: Optional[RotaryEmbedding] = None,
        generator: Optional[torch.Generator] = None,
    ):
        super().__init__()
        self.d_model = d_model
        self.self_attn = AttentionUnit(
            d_model, num_heads, causal=causal, context=context,
            rope=rope, generator=generator,
        )
        self.feed_forward = FeedForwardUnit(d_model, dim_feedforward, generator=generator)

    def _forward(self, hidden: torch.Tensor, positions: Optional[torch.Tensor]) -> torch.Tensor:
        hidden = self.self_attn._forward(hidden, positions)
        return self.feed_forward._forward(hidden, positions)


def build_layer_units(config: "TransformerConfig") -> List[_ModuleUnit]:
    """
    工厂函数：按config.layer_type构建num_layers个层单元

    Args:
        config: shell配置

    Returns:
        层单元列表，参数已转换到config.dtype
    """
    generator = make_generator(config.seed)

    rope = None
    needs_attention = config.layer_type in ("attention", "transformer")
    if needs_attention and config.positional_embedding in ROPE_EMBEDDINGS:
        rope = RotaryEmbedding(
            head_dim=config.d_model // config.num_heads,
            max_period=config.max_period,
        )

    units: List[_ModuleUnit] = []
    for layer_idx in range(config.num_layers):
        if config.layer_type == "identity":
            unit = IdentityUnit()
        elif config.layer_type == "attention":
            unit = AttentionUnit(
                config.d_model, config.num_heads,
                causal=config.causal, context=config.context,
                rope=rope, generator=generator,
            )
        elif config.layer_type == "feed_forward":
            unit = FeedForwardUnit(
                config.d_model, config.feedforward_width(layer_idx), generator=generator,
            )
        else:
            unit = TransformerLayerUnit(
                config.d_model, config.num_heads, config.feedforward_width(layer_idx),
                causal=config.causal, context=config.context,
                rope=rope, generator=generator,
            )
        units.append(unit.to(torch_dtype(config.dtype)))

    return units
