"""
流式Transformer模块

- StreamingState: 调用方持有的逐行offset状态
- StreamingTransformer: 位置编码注入 + 层单元栈 + offset推进
- ProjectedTransformer: 输入/输出宽度投影与(B, T, C)/(B, C, T)布局转换

shell本身不保存任何逐序列状态，StreamingState作为参数显式传入，
因此同一个shell可以被多个独立序列复用。
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence

import torch
import torch.nn as nn

from stream_engine.config import ProjectedTransformerConfig, TransformerConfig
from stream_engine.errors import (
    BatchSizeMismatch,
    InvalidConfiguration,
    InvalidShape,
    ShapeMismatch,
)
from stream_engine.logging_utils import get_logger
from stream_engine.models.layers import (
    Identity,
    LayerUnit,
    Linear,
    accepts_positions,
    build_layer_units,
    make_generator,
)
from stream_engine.models.positional import build_positions, create_sin_embedding
from stream_engine.ops.functional import add, scale, transpose, zeros
from stream_engine.ops.tensor import Tensor
from stream_engine.tensor_types import (
    POSITIONAL_EMBEDDINGS,
    SIN_EMBEDDINGS,
    check_device,
    check_tensor_rank,
)


logger = get_logger(__name__)


class StreamingState:
    """
    流式状态

    offsets[i]是第i行下一次期望的绝对时间下标。
    exec_mask[i]为False的行在forward后保持原offset（padding/非活跃行）。

    每个逻辑序列（会话）一个实例，由调用方独占，不能被并发的forward共享。
    """

    def __init__(self, batch_size: int, device: str = "cpu"):
        """
        Args:
            batch_size: 批量大小
            device: 设备标签
        """
        if batch_size <= 0:
            raise InvalidShape(f"batch_size必须为正，得到: {batch_size}")
        self.batch_size = batch_size
        self.device = check_device(device)
        self.offsets: Tensor = zeros([batch_size], dtype="int32", device=device)
        self.exec_mask: Optional[List[bool]] = None

    def reset(self, mask: Optional[Sequence[bool]] = None) -> None:
        """
        重置offset

        Args:
            mask: None时全部清零；否则对 i < min(len(mask), batch_size)
                  且mask[i]为True的行清零，mask之外的行保持不变
        """
        if mask is None:
            self.offsets.buffer.zero_()
            return

        for i in range(min(len(mask), self.batch_size)):
            if mask[i]:
                self.offsets.buffer[i] = 0

    def advance(self, steps: int) -> None:
        """
        所有活跃行的offset增加steps

        exec_mask为None时所有行都活跃；exec_mask短于batch时，超出部分视为不活跃。
        """
        if self.exec_mask is None:
            self.offsets.buffer.add_(steps)
            return

        active = torch.zeros(self.batch_size, dtype=torch.bool)
        for i, flag in enumerate(self.exec_mask[: self.batch_size]):
            active[i] = bool(flag)
        self.offsets.buffer[active] += steps

    def offset_list(self) -> List[int]:
        """offset的Python列表形式"""
        return [int(v) for v in self.offsets.buffer.tolist()]

    def __repr__(self) -> str:
        return (f"StreamingState(batch_size={self.batch_size}, "
                f"offsets={self.offset_list()}, exec_mask={self.exec_mask})")


class StreamingTransformer(nn.Module):
    """
    流式Transformer shell

    每次forward:
    1. 计算每行的起始offset（无state时为0）
    2. sin/sin_rope: 注入 positional_scale * sin_embedding(t + offset)
    3. 依次通过层单元栈，每个单元必须保持 [B, T, C] 形状
    4. 有state时，活跃行的offset增加T
    """

    def __init__(
        self,
        config: Optional[TransformerConfig] = None,
        layer_units: Optional[Sequence[LayerUnit]] = None,
        **kwargs: Any,
    ):
        """
        Args:
            config: shell配置，None时由kwargs构造TransformerConfig
            layer_units: 可选的层单元序列，长度必须等于num_layers；
                         None时按config.layer_type构建
            **kwargs: TransformerConfig的字段
        """
        super().__init__()
        if config is None:
            config = TransformerConfig(**kwargs)
        elif kwargs:
            config = config.replace(**kwargs)

        if config.positional_embedding not in POSITIONAL_EMBEDDINGS:
            raise InvalidConfiguration(
                f"positional_embedding非法: {config.positional_embedding}"
            )
        self.config = config

        if layer_units is None:
            layer_units = build_layer_units(config)
        layer_units = list(layer_units)
        if len(layer_units) != config.num_layers:
            raise InvalidConfiguration(
                f"层单元数量({len(layer_units)})必须等于num_layers({config.num_layers})"
            )
        for unit in layer_units:
            if not callable(getattr(unit, "forward", None)):
                raise InvalidConfiguration(f"层单元缺少forward方法: {unit!r}")

        self.layer_units: List[LayerUnit] = layer_units
        self._unit_takes_positions = [accepts_positions(u) for u in layer_units]
        # 仅用于注册torch模块的参数
        self.layers = nn.ModuleList([u for u in layer_units if isinstance(u, nn.Module)])

        logger.info(
            f"StreamingTransformer: d_model={config.d_model}, layers={config.num_layers}, "
            f"layer_type={config.layer_type}, positional_embedding={config.positional_embedding}"
        )

    @property
    def positional_embedding(self) -> str:
        return self.config.positional_embedding

    def create_streaming_state(self, batch_size: int) -> StreamingState:
        """创建新的流式状态（offset全为0）"""
        return StreamingState(batch_size, device=self.config.device)

    def forward(self, x: Tensor, state: Optional[StreamingState] = None) -> Tensor:
        """
        前向传播

        Args:
            x: 输入, shape [B, T, C]
            state: 可选的流式状态，会被原地推进

        Returns:
            输出, shape [B, T, C]，元素类型与设备标签同x
        """
        check_tensor_rank(x, 3, name="x")
        batch_size, seq_len, channels = x.shape
        input_dtype = x.dtype
        input_device = x.device

        offsets = self._base_offsets(batch_size, state)
        positions = build_positions(batch_size, seq_len, offsets, device=input_device)

        hidden = x.astype(self.config.dtype)

        if self.config.positional_embedding in SIN_EMBEDDINGS:
            pos_emb = create_sin_embedding(
                positions, channels,
                max_period=self.config.max_period,
                dtype=self.config.dtype,
            )
            hidden = add(hidden, scale(pos_emb, self.config.positional_scale))

        for layer_idx, unit in enumerate(self.layer_units):
            if self._unit_takes_positions[layer_idx]:
                out = unit.forward(hidden, positions=positions)
            else:
                out = unit.forward(hidden)
            if out.shape != hidden.shape:
                raise ShapeMismatch(
                    f"第{layer_idx}层输出形状{list(out.shape)}与输入{list(hidden.shape)}不一致"
                )
            hidden = out

        if state is not None:
            state.advance(seq_len)

        logger.debug(f"forward: shape={list(x.shape)}, offsets={offsets}")

        result = hidden.astype(input_dtype)
        return Tensor(result.buffer, result.shape, device=input_device, dtype=input_dtype)

    def _base_offsets(self, batch_size: int, state: Optional[StreamingState]) -> List[int]:
        """
        每行的起始offset

        输入batch超过state的batch时，超出的行沿用state最后一行的offset；
        strict_batch_size为True时直接报错。
        """
        if state is None:
            return [0] * batch_size

        state_offsets = state.offset_list()
        if batch_size > len(state_offsets):
            if self.config.strict_batch_size:
                raise BatchSizeMismatch(
                    f"输入batch({batch_size})超过StreamingState的batch({len(state_offsets)})"
                )
            logger.warning(
                f"输入batch({batch_size})超过StreamingState的batch({len(state_offsets)})，"
                f"超出的行使用最后一行的offset"
            )
        last = len(state_offsets) - 1
        return [state_offsets[min(b, last)] for b in range(batch_size)]


class ProjectedTransformer(nn.Module):
    """
    带输入/输出投影的Transformer，支持多个输出

    - input_dimension != d_model 时插入输入投影
    - 每个输出宽度一个输出投影（等于d_model时为Identity）
    - layout为channel_first时输入输出都是 [B, C, T]
    """

    def __init__(
        self,
        config: Optional[ProjectedTransformerConfig] = None,
        layer_units: Optional[Sequence[LayerUnit]] = None,
        **kwargs: Any,
    ):
        """
        Args:
            config: 投影Transformer配置，None时由kwargs构造
            layer_units: 可选的层单元序列，透传给shell
            **kwargs: ProjectedTransformerConfig的字段
        """
        super().__init__()
        if config is None:
            config = ProjectedTransformerConfig(**kwargs)
        self.config = config
        self.input_dimension = config.input_dimension
        self.output_dimensions = config.output_dimensions
        self.d_model = config.d_model
        self.conv_layout = config.conv_layout

        shell_config = config.transformer_config()
        self.transformer = StreamingTransformer(shell_config, layer_units=layer_units)

        generator = make_generator(shell_config.seed)

        self.input_proj: Optional[Linear] = None
        if config.d_model != config.input_dimension:
            self.input_proj = Linear(
                config.input_dimension, config.d_model, bias=False, generator=generator,
            )

        self.output_projs = nn.ModuleList()
        for output_dimension in config.output_dimensions:
            if config.d_model == output_dimension:
                self.output_projs.append(Identity())
            else:
                self.output_projs.append(
                    Linear(config.d_model, output_dimension, bias=False, generator=generator)
                )

    def create_streaming_state(self, batch_size: int) -> StreamingState:
        """创建新的流式状态"""
        return self.transformer.create_streaming_state(batch_size)

    def forward(self, x: Tensor, state: Optional[StreamingState] = None) -> List[Tensor]:
        """
        前向传播

        Args:
            x: 输入, sequence_first时shape [B, T, input_dimension]，
               channel_first时shape [B, input_dimension, T]
            state: 可选的流式状态

        Returns:
            每个输出宽度一个张量，顺序与output_dimensions一致
        """
        if self.conv_layout:
            x = transpose(x, 1, 2)
        check_tensor_rank(x, 3, name="x")

        if self.input_proj is not None:
            x = self.input_proj(x)
        elif x.shape[-1] != self.input_dimension:
            raise ShapeMismatch(
                f"输入通道数应为{self.input_dimension}，得到形状{list(x.shape)}"
            )

        z = self.transformer(x, state)

        ys = []
        for output_proj in self.output_projs:
            y = output_proj(z)
            if self.conv_layout:
                y = transpose(y, 1, 2)
            ys.append(y)
        return ys


def build_streaming_transformer(config: TransformerConfig) -> StreamingTransformer:
    """
    工厂函数：构建StreamingTransformer

    Args:
        config: shell配置

    Returns:
        推理模式下的StreamingTransformer
    """
    return StreamingTransformer(config).eval()


def build_projected_transformer(config: ProjectedTransformerConfig) -> ProjectedTransformer:
    """
    工厂函数：构建ProjectedTransformer

    Args:
        config: 投影Transformer配置

    Returns:
        推理模式下的ProjectedTransformer
    """
    model = ProjectedTransformer(config).eval()

    total_params = sum(p.numel() for p in model.parameters())
    logger.info(f"ProjectedTransformer参数量: {total_params:,}")
    return model
