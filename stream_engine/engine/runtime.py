"""
流式推理运行时模块

StreamingRuntime按EngineConfig构建ProjectedTransformer，提供异步初始化、
前向计算、流式状态创建与资源释放。初始化完成前调用forward会抛出
UninitializedComponent。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from stream_engine.config import EngineConfig
from stream_engine.errors import UninitializedComponent
from stream_engine.logging_utils import LoggerMixin, get_logger
from stream_engine.engine.profiler import create_profiler
from stream_engine.models.transformer import (
    ProjectedTransformer,
    StreamingState,
    build_projected_transformer,
)
from stream_engine.ops.tensor import Tensor


class StreamingRuntime(LoggerMixin):
    """
    流式推理运行时

    使用方式:
    1. runtime = await create_runtime(EngineConfig(model_size="small"))
    2. state = runtime.create_streaming_state()
    3. 对每个chunk调用 runtime.forward(x, state)
    4. 序列边界处调用 state.reset(mask)
    5. 结束时调用 runtime.dispose()
    """

    def __init__(
        self,
        engine_config: Optional[EngineConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            engine_config: 运行时配置，None则使用默认配置
            logger: 日志器
        """
        self.engine_config = engine_config or EngineConfig()
        self._logger = logger or get_logger(__name__)
        self.profiler = create_profiler(self.engine_config.enable_profiling)

        self._model: Optional[ProjectedTransformer] = None
        self._initialized = False

        # 统计
        self._total_forwards = 0
        self._total_frames = 0

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def model(self) -> ProjectedTransformer:
        """底层的ProjectedTransformer"""
        if self._model is None:
            raise UninitializedComponent("Runtime未初始化，请先调用initialize()")
        return self._model

    async def initialize(self) -> None:
        """
        异步初始化：在线程池中构建模型，重复调用无副作用
        """
        if self._initialized:
            return

        self.logger.info(
            f"初始化StreamingRuntime: model_size={self.engine_config.model_size}, "
            f"d_model={self.engine_config.d_model}, task={self.engine_config.task}, "
            f"device={self.engine_config.device}, precision={self.engine_config.precision}"
        )

        projected_config = self.engine_config.to_projected_config()
        loop = asyncio.get_running_loop()
        self._model = await loop.run_in_executor(
            None, build_projected_transformer, projected_config
        )

        self._initialized = True
        self.logger.info("StreamingRuntime初始化完成")

    def forward(self, x: Tensor, state: Optional[StreamingState] = None) -> List[Tensor]:
        """
        前向计算

        Args:
            x: 输入张量，布局由engine_config.layout决定
            state: 可选的流式状态

        Returns:
            每个输出宽度一个张量

        Raises:
            UninitializedComponent: 尚未完成initialize()或已dispose()
        """
        if not self._initialized:
            raise UninitializedComponent("Runtime未初始化，请先调用initialize()")

        self._check_limits(x)

        with self.profiler.record("forward"):
            outputs = self.model(x, state)

        seq_len = x.shape[2] if self.engine_config.layout == "channel_first" else x.shape[1]
        self._total_forwards += 1
        self._total_frames += seq_len
        self.profiler.increment("frames", seq_len)
        return outputs

    def _check_limits(self, x: Tensor) -> None:
        """超出配置的batch或上下文长度时记录警告"""
        if x.ndim != 3:
            return
        batch_size = x.shape[0]
        seq_len = x.shape[2] if self.engine_config.layout == "channel_first" else x.shape[1]

        if batch_size > self.engine_config.batch_size:
            self.logger.warning(
                f"输入batch({batch_size})超过配置的batch_size({self.engine_config.batch_size})"
            )
        max_len = self.engine_config.max_context_length
        if max_len is not None and seq_len > max_len:
            self.logger.warning(f"chunk长度({seq_len})超过max_context_length({max_len})")

    def create_streaming_state(self, batch_size: Optional[int] = None) -> StreamingState:
        """
        创建流式状态

        Args:
            batch_size: 批量大小，None则使用engine_config.batch_size
        """
        if batch_size is None:
            batch_size = self.engine_config.batch_size
        return StreamingState(batch_size, device=self.engine_config.device)

    def get_stats(self) -> Dict[str, Any]:
        """获取运行时统计信息"""
        return {
            "initialized": self._initialized,
            "total_forwards": self._total_forwards,
            "total_frames": self._total_frames,
            "profile": self.profiler.summary(),
        }

    def dispose(self) -> None:
        """释放模型，之后需要重新initialize()"""
        if self._initialized and self.engine_config.enable_profiling:
            self.profiler.log_summary(self.logger)
        self._model = None
        self._initialized = False
        self.logger.debug("StreamingRuntime已释放")


async def create_runtime(engine_config: Optional[EngineConfig] = None) -> StreamingRuntime:
    """
    工厂函数：创建并初始化StreamingRuntime

    Args:
        engine_config: 运行时配置

    Returns:
        已初始化的运行时
    """
    runtime = StreamingRuntime(engine_config)
    await runtime.initialize()
    return runtime
