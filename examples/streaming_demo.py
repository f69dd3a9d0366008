#!/usr/bin/env python3
"""
流式推理示例

展示分chunk前向与整段前向的一致性、逐行offset重置，
以及channel-first布局下的多输出投影。
"""

import asyncio
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import torch
from stream_engine import (
    EngineConfig,
    Tensor,
    TransformerConfig,
    StreamingTransformer,
    create_runtime,
    get_logger,
    setup_logging,
    __version__,
)


async def main():
    setup_logging(level="INFO")
    logger = get_logger(__name__)

    logger.info(f"=== Stream Engine v{__version__} - Streaming Demo ===")

    # 1. 分chunk与整段前向的一致性
    logger.info("\n--- 测试chunk一致性 ---")

    shell = StreamingTransformer(TransformerConfig(d_model=16, num_layers=2))
    x = torch.randn(1, 12, 16)

    full = shell(Tensor.from_torch(x))

    state = shell.create_streaming_state(1)
    chunks = [shell(Tensor.from_torch(x[:, i:i + 4]), state) for i in range(0, 12, 4)]
    chunked = torch.cat([c.data for c in chunks], dim=1)

    max_diff = (full.data - chunked).abs().max().item()
    logger.info(f"offsets: {state.offset_list()}, 最大差异: {max_diff:.2e}")

    if max_diff < 1e-6:
        logger.info("chunk一致性验证通过!")
    else:
        logger.warning("数值差异较大，请检查实现")

    # 2. 逐行重置
    logger.info("\n--- 测试逐行重置 ---")

    state = shell.create_streaming_state(3)
    shell(Tensor.from_torch(torch.randn(3, 5, 16)), state)
    logger.info(f"forward后: {state.offset_list()}")
    state.reset([True, False, True])
    logger.info(f"reset([True, False, True])后: {state.offset_list()}")

    # 3. 运行时与多输出投影
    logger.info("\n--- 测试StreamingRuntime ---")

    engine_config = EngineConfig(
        model_size="small",
        input_dimension=80,
        output_dimensions=(32, 128),
        layout="channel_first",
        max_context_length=64,
        seed=0,
        enable_profiling=True,
    )
    runtime = await create_runtime(engine_config)

    state = runtime.create_streaming_state()
    for _ in range(4):
        frames = Tensor.from_torch(torch.randn(1, 80, 10))
        outputs = runtime.forward(frames, state)

    logger.info(f"输出形状: {[list(y.shape) for y in outputs]}")
    logger.info(f"统计: total_forwards={runtime.get_stats()['total_forwards']}, "
                f"offsets={state.offset_list()}")

    runtime.dispose()

    logger.info("\n=== 验证完成! ===")

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
