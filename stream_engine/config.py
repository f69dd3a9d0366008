"""
流式推理引擎配置模块

提供Transformer shell配置(TransformerConfig)、投影Transformer配置
(ProjectedTransformerConfig)和运行时配置(EngineConfig)的定义与加载。
支持从默认值、字典、JSON文件、环境变量加载配置。
所有非法取值在构造时立即抛出InvalidConfiguration。
"""

from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, Any, Union, Tuple

from stream_engine.errors import InvalidConfiguration
from stream_engine.tensor_types import (
    DEVICE_TAGS,
    LAYOUT_KINDS,
    POSITIONAL_EMBEDDINGS,
)


# 层单元类型（闭集）
LAYER_TYPES = frozenset({"identity", "attention", "feed_forward", "transformer"})

# 需要多头注意力的层单元类型
ATTENTION_LAYER_TYPES = frozenset({"attention", "transformer"})

# 模型规模预设 -> d_model
MODEL_SIZES: Dict[str, int] = {
    "small": 128,
    "base": 256,
    "large": 512,
}

TASKS = frozenset({"text-generation", "audio-processing", "multimodal"})

# 运行时精度（元素类型标签的浮点子集）
PRECISIONS = frozenset({"float32", "float64"})


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise InvalidConfiguration(message)


def _filter_fields(cls, config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """只保留dataclass中声明过的字段"""
    valid_fields = {f.name for f in dataclasses.fields(cls)}
    return {k: v for k, v in config_dict.items() if k in valid_fields}


@dataclass(frozen=True)
class TransformerConfig:
    """
    流式Transformer shell配置

    构造后不可变。dim_feedforward可以是所有层共用的int，也可以是逐层的列表。
    """
    # 结构
    d_model: int = 256
    num_heads: int = 8
    num_layers: int = 2
    dim_feedforward: Union[int, Tuple[int, ...]] = 1024

    # 注意力
    causal: bool = True
    context: Optional[int] = None  # 注意力回看窗口，None表示不限

    # 位置编码
    positional_embedding: str = "sin"  # sin / rope / sin_rope / none
    max_period: float = 10000.0
    positional_scale: float = 1.0

    # 层单元
    layer_type: str = "identity"  # identity / attention / feed_forward / transformer

    # 元素类型与设备标签
    dtype: str = "float32"
    device: str = "cpu"

    # 输入batch超过state batch时: False沿用最后一行的offset, True直接报错
    strict_batch_size: bool = False

    # 权重初始化随机种子，None表示不固定
    seed: Optional[int] = None

    def __post_init__(self):
        if isinstance(self.dim_feedforward, list):
            object.__setattr__(self, "dim_feedforward", tuple(self.dim_feedforward))
        self._validate()

    def _validate(self) -> None:
        """验证配置有效性"""
        _require(
            self.positional_embedding in POSITIONAL_EMBEDDINGS,
            f"positional_embedding必须是{sorted(POSITIONAL_EMBEDDINGS)}之一，"
            f"得到: {self.positional_embedding}",
        )
        _require(
            self.layer_type in LAYER_TYPES,
            f"layer_type必须是{sorted(LAYER_TYPES)}之一，得到: {self.layer_type}",
        )
        _require(self.d_model > 0, f"d_model必须为正，得到: {self.d_model}")
        _require(self.num_heads > 0, f"num_heads必须为正，得到: {self.num_heads}")
        _require(self.num_layers >= 0, f"num_layers不能为负，得到: {self.num_layers}")
        _require(self.max_period > 0, f"max_period必须为正，得到: {self.max_period}")
        _require(
            self.context is None or self.context > 0,
            f"context必须为正或None，得到: {self.context}",
        )
        if self.layer_type in ATTENTION_LAYER_TYPES:
            _require(
                self.d_model % self.num_heads == 0,
                f"d_model({self.d_model})必须能被num_heads({self.num_heads})整除",
            )

        if isinstance(self.dim_feedforward, tuple):
            _require(
                len(self.dim_feedforward) == self.num_layers,
                f"逐层dim_feedforward长度({len(self.dim_feedforward)})"
                f"必须等于num_layers({self.num_layers})",
            )
            widths = self.dim_feedforward
        else:
            widths = (self.dim_feedforward,)
        _require(all(w > 0 for w in widths), f"dim_feedforward必须为正，得到: {self.dim_feedforward}")

        _require(
            self.dtype in ("float32", "float64"),
            f"dtype必须是float32或float64，得到: {self.dtype}",
        )
        _require(
            self.device in DEVICE_TAGS,
            f"device必须是{sorted(DEVICE_TAGS)}之一，得到: {self.device}",
        )

    def feedforward_width(self, layer_idx: int) -> int:
        """第layer_idx层的FFN中间维度"""
        if isinstance(self.dim_feedforward, tuple):
            return self.dim_feedforward[layer_idx]
        return self.dim_feedforward

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> TransformerConfig:
        """从字典创建配置"""
        return cls(**_filter_fields(cls, config_dict))

    @classmethod
    def from_json(cls, json_path: Union[str, Path]) -> TransformerConfig:
        """从JSON文件加载配置"""
        with open(json_path, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return asdict(self)

    def save_json(self, json_path: Union[str, Path]) -> None:
        """保存为JSON文件"""
        with open(json_path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

    def replace(self, **overrides: Any) -> TransformerConfig:
        """返回替换部分字段后的新配置"""
        return dataclasses.replace(self, **overrides)


@dataclass(frozen=True)
class ProjectedTransformerConfig:
    """
    投影Transformer配置

    输入/输出宽度与d_model不同时自动插入线性投影。
    layout为channel_first时输入输出均为 [B, C, T]。
    """
    input_dimension: int
    output_dimensions: Tuple[int, ...]
    d_model: int
    layout: str = "sequence_first"
    transformer: TransformerConfig = field(default_factory=TransformerConfig)

    def __post_init__(self):
        object.__setattr__(self, "output_dimensions", tuple(self.output_dimensions))
        self._validate()

    def _validate(self) -> None:
        """验证配置有效性"""
        _require(
            self.input_dimension > 0,
            f"input_dimension必须为正，得到: {self.input_dimension}",
        )
        _require(self.d_model > 0, f"d_model必须为正，得到: {self.d_model}")
        _require(len(self.output_dimensions) > 0, "output_dimensions不能为空")
        _require(
            all(d > 0 for d in self.output_dimensions),
            f"output_dimensions必须全部为正，得到: {list(self.output_dimensions)}",
        )
        _require(
            self.layout in LAYOUT_KINDS,
            f"layout必须是{sorted(LAYOUT_KINDS)}之一，得到: {self.layout}",
        )

    @property
    def conv_layout(self) -> bool:
        """是否为channel-first布局"""
        return self.layout == "channel_first"

    def transformer_config(self) -> TransformerConfig:
        """shell使用的配置，d_model以本配置为准"""
        if self.transformer.d_model == self.d_model:
            return self.transformer
        return self.transformer.replace(d_model=self.d_model)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> ProjectedTransformerConfig:
        """从字典创建配置，transformer字段可以是嵌套字典"""
        filtered = _filter_fields(cls, config_dict)
        inner = filtered.get("transformer")
        if isinstance(inner, dict):
            filtered["transformer"] = TransformerConfig.from_dict(inner)
        return cls(**filtered)

    @classmethod
    def from_json(cls, json_path: Union[str, Path]) -> ProjectedTransformerConfig:
        """从JSON文件加载配置"""
        with open(json_path, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return asdict(self)

    def save_json(self, json_path: Union[str, Path]) -> None:
        """保存为JSON文件"""
        with open(json_path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)


@dataclass
class EngineConfig:
    """
    运行时配置

    控制StreamingRuntime构建的模型规模、精度、布局和日志行为。
    """
    # 模型规模与任务
    model_size: str = "base"  # small / base / large
    task: str = "text-generation"

    # 设备与精度
    device: str = "cpu"
    precision: str = "float32"

    # 序列与批量
    max_context_length: Optional[int] = None
    batch_size: int = 1

    # 输入/输出宽度，None表示等于d_model
    input_dimension: Optional[int] = None
    output_dimensions: Optional[Tuple[int, ...]] = None

    # Transformer结构
    num_layers: int = 2
    num_heads: int = 4
    layer_type: str = "transformer"
    positional_embedding: str = "sin"
    layout: str = "sequence_first"
    seed: Optional[int] = None

    # 性能分析
    enable_profiling: bool = False

    # 日志级别
    log_level: str = "INFO"

    def __post_init__(self):
        if self.output_dimensions is not None:
            self.output_dimensions = tuple(self.output_dimensions)
        self._validate()

    def _validate(self) -> None:
        """验证配置有效性"""
        _require(
            self.model_size in MODEL_SIZES,
            f"model_size必须是{sorted(MODEL_SIZES)}之一，得到: {self.model_size}",
        )
        _require(self.task in TASKS, f"task必须是{sorted(TASKS)}之一，得到: {self.task}")
        _require(
            self.device in DEVICE_TAGS,
            f"device必须是{sorted(DEVICE_TAGS)}之一，得到: {self.device}",
        )
        _require(
            self.precision in PRECISIONS,
            f"precision必须是{sorted(PRECISIONS)}之一，得到: {self.precision}",
        )
        _require(self.batch_size > 0, f"batch_size必须为正，得到: {self.batch_size}")
        _require(
            self.max_context_length is None or self.max_context_length > 0,
            f"max_context_length必须为正或None，得到: {self.max_context_length}",
        )
        _require(
            self.input_dimension is None or self.input_dimension > 0,
            f"input_dimension必须为正或None，得到: {self.input_dimension}",
        )
        _require(
            self.output_dimensions is None
            or (len(self.output_dimensions) > 0 and all(d > 0 for d in self.output_dimensions)),
            f"output_dimensions必须为None或非空的正整数序列，得到: {self.output_dimensions}",
        )
        # 结构字段（layer_type、layout、头数等）由下层配置校验
        self.to_projected_config()

    @property
    def d_model(self) -> int:
        """由model_size决定的模型宽度"""
        return MODEL_SIZES[self.model_size]

    def to_transformer_config(self) -> TransformerConfig:
        """构建shell配置"""
        return TransformerConfig(
            d_model=self.d_model,
            num_heads=self.num_heads,
            num_layers=self.num_layers,
            dim_feedforward=4 * self.d_model,
            causal=True,
            context=self.max_context_length,
            positional_embedding=self.positional_embedding,
            layer_type=self.layer_type,
            dtype=self.precision,
            device=self.device,
            seed=self.seed,
        )

    def to_projected_config(self) -> ProjectedTransformerConfig:
        """构建投影Transformer配置"""
        return ProjectedTransformerConfig(
            input_dimension=self.d_model if self.input_dimension is None else self.input_dimension,
            output_dimensions=(
                (self.d_model,) if self.output_dimensions is None else self.output_dimensions
            ),
            d_model=self.d_model,
            layout=self.layout,
            transformer=self.to_transformer_config(),
        )

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> EngineConfig:
        """从字典创建配置"""
        return cls(**_filter_fields(cls, config_dict))

    @classmethod
    def from_json(cls, json_path: Union[str, Path]) -> EngineConfig:
        """从JSON文件加载配置"""
        with open(json_path, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def from_env(cls, prefix: str = "STREAM_ENGINE_") -> EngineConfig:
        """
        从环境变量加载配置

        例如: STREAM_ENGINE_MODEL_SIZE=small, STREAM_ENGINE_OUTPUT_DIMENSIONS=64,128
        """
        config_dict = {}

        for f in dataclasses.fields(cls):
            env_key = f"{prefix}{f.name.upper()}"
            if env_key in os.environ:
                config_dict[f.name] = _coerce_env_value(f.type, os.environ[env_key])

        return cls.from_dict(config_dict)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return asdict(self)

    def save_json(self, json_path: Union[str, Path]) -> None:
        """保存为JSON文件"""
        with open(json_path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

    def merge(self, overrides: Dict[str, Any]) -> EngineConfig:
        """合并配置覆盖项，返回新配置"""
        merged = self.to_dict()
        merged.update(overrides)
        return EngineConfig.from_dict(merged)


def _coerce_env_value(field_type: Any, value: str) -> Any:
    """按字段注解（字符串形式）转换环境变量的值"""
    if field_type in (int, "int", "Optional[int]"):
        return int(value)
    if field_type in (float, "float"):
        return float(value)
    if field_type in (bool, "bool"):
        return value.lower() in ("true", "1", "yes")
    if field_type == "Optional[Tuple[int, ...]]":
        return tuple(int(v) for v in value.split(",") if v.strip())
    return value
