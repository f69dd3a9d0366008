"""
Stream Engine - 流式Transformer计算与状态引擎

为自回归序列模型提供:
- 扁平buffer上的N维张量值与形状运算（reshape视图 / transpose拷贝）
- 逐元素运算与正弦位置编码
- 跨chunk推进逐行offset的流式Transformer shell
- 支持任意输入/输出宽度与两种轴布局的ProjectedTransformer
"""

__version__ = "0.1.0"
__author__ = "Stream Engine Team"

from stream_engine.config import (
    TransformerConfig,
    ProjectedTransformerConfig,
    EngineConfig,
)
from stream_engine.errors import (
    StreamEngineError,
    InvalidShape,
    InvalidRange,
    ShapeMismatch,
    BatchSizeMismatch,
    UnsupportedTranspose,
    InvalidConfiguration,
    UninitializedComponent,
)
from stream_engine.logging_utils import (
    get_logger,
    setup_logging,
    set_log_level,
    LoggerMixin,
)
from stream_engine.ops import (
    Tensor,
    zeros,
    arange,
    reshape,
    transpose,
    add,
    scale,
)
from stream_engine.models import (
    create_sin_embedding,
    StreamingState,
    StreamingTransformer,
    ProjectedTransformer,
    IdentityUnit,
    AttentionUnit,
    FeedForwardUnit,
    TransformerLayerUnit,
)
from stream_engine.engine import StreamingRuntime, create_runtime

__all__ = [
    # 版本信息
    "__version__",
    # 配置类
    "TransformerConfig",
    "ProjectedTransformerConfig",
    "EngineConfig",
    # 异常
    "StreamEngineError",
    "InvalidShape",
    "InvalidRange",
    "ShapeMismatch",
    "BatchSizeMismatch",
    "UnsupportedTranspose",
    "InvalidConfiguration",
    "UninitializedComponent",
    # 日志工具
    "get_logger",
    "setup_logging",
    "set_log_level",
    "LoggerMixin",
    # 张量与运算
    "Tensor",
    "zeros",
    "arange",
    "reshape",
    "transpose",
    "add",
    "scale",
    # 模型
    "create_sin_embedding",
    "StreamingState",
    "StreamingTransformer",
    "ProjectedTransformer",
    "IdentityUnit",
    "AttentionUnit",
    "FeedForwardUnit",
    "TransformerLayerUnit",
    # 运行时
    "StreamingRuntime",
    "create_runtime",
]
