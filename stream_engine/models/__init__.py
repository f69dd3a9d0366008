"""
模型模块

包含:
- positional.py: 正弦位置编码与旋转位置编码
- layers.py: Linear/Identity投影, RMSNorm, 可替换的层单元
- transformer.py: StreamingState, StreamingTransformer, ProjectedTransformer
"""

from stream_engine.models.positional import (
    RotaryEmbedding,
    build_positions,
    create_sin_embedding,
)
from stream_engine.models.layers import (
    LayerUnit,
    Linear,
    Identity,
    RMSNorm,
    IdentityUnit,
    AttentionUnit,
    FeedForwardUnit,
    TransformerLayerUnit,
    build_layer_units,
)
from stream_engine.models.transformer import (
    StreamingState,
    StreamingTransformer,
    ProjectedTransformer,
    build_streaming_transformer,
    build_projected_transformer,
)

__all__ = [
    "RotaryEmbedding",
    "build_positions",
    "create_sin_embedding",
    "LayerUnit",
    "Linear",
    "Identity",
    "RMSNorm",
    "IdentityUnit",
    "AttentionUnit",
    "FeedForwardUnit",
    "TransformerLayerUnit",
    "build_layer_units",
    "StreamingState",
    "StreamingTransformer",
    "ProjectedTransformer",
    "build_streaming_transformer",
    "build_projected_transformer",
]
