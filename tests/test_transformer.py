"""
StreamingTransformer单元测试

测试位置编码注入、offset推进、batch钳制、层单元栈与注意力掩码。
"""

import pytest
import torch

from stream_engine import (
    Tensor,
    TransformerConfig,
    StreamingTransformer,
    IdentityUnit,
    add,
    scale,
    BatchSizeMismatch,
    InvalidConfiguration,
    ShapeMismatch,
)
from stream_engine.models import (
    build_positions,
    build_streaming_transformer,
    create_sin_embedding,
)


def random_input(batch_size, seq_len, channels, dtype=torch.float32):
    return Tensor.from_torch(torch.randn(batch_size, seq_len, channels, dtype=dtype))


def sin_at(offsets, seq_len, dim):
    return create_sin_embedding(build_positions(len(offsets), seq_len, offsets), dim)


class Doubler:
    """只接受x的自定义层单元"""

    def forward(self, x):
        return scale(x, 2.0)


class PositionRecorder:
    """记录shell传入的positions"""

    def __init__(self):
        self.seen = None

    def forward(self, x, positions=None):
        self.seen = positions.tolist()
        return x


class Shrinker:
    """违反形状保持契约的层单元"""

    def forward(self, x):
        return Tensor.from_torch(x.data[:, :, :-1])


@pytest.fixture(autouse=True)
def fixed_seed():
    torch.manual_seed(0)


@pytest.fixture
def sin_shell():
    """d_model=8、正弦位置编码、恒等层单元的shell"""
    return StreamingTransformer(TransformerConfig(d_model=8, num_layers=2))


class TestConstruction:
    def test_invalid_positional_embedding(self):
        with pytest.raises(InvalidConfiguration):
            StreamingTransformer(d_model=8, positional_embedding="learned")

    def test_unit_count_must_match(self):
        config = TransformerConfig(d_model=4, num_layers=2)
        with pytest.raises(InvalidConfiguration):
            StreamingTransformer(config, layer_units=[IdentityUnit()])

    def test_unit_without_forward(self):
        config = TransformerConfig(d_model=4, num_layers=1)
        with pytest.raises(InvalidConfiguration):
            StreamingTransformer(config, layer_units=[object()])

    def test_kwargs_override_config(self):
        shell = StreamingTransformer(TransformerConfig(d_model=8), num_layers=3)
        assert shell.config.num_layers == 3
        assert len(shell.layer_units) == 3

    def test_parameters_registered(self):
        config = TransformerConfig(d_model=8, num_heads=2, layer_type="transformer", seed=1)
        shell = build_streaming_transformer(config)
        assert sum(p.numel() for p in shell.parameters()) > 0
        assert all(not p.requires_grad for p in shell.parameters())
        assert not shell.training


class TestPositionalInjection:
    def test_no_state_uses_offset_zero(self, sin_shell):
        x = random_input(2, 5, 8)
        out = sin_shell(x)
        expected = add(x, sin_at([0, 0], 5, 8))
        assert out.allclose(expected)

    def test_none_embedding_is_passthrough(self):
        shell = StreamingTransformer(d_model=8, positional_embedding="none")
        x = random_input(1, 4, 8)
        assert shell(x).equal(x)

    def test_rope_kind_does_not_inject(self):
        shell = StreamingTransformer(d_model=8, positional_embedding="rope")
        x = random_input(1, 4, 8)
        assert shell(x).equal(x)

    def test_positional_scale(self):
        shell = StreamingTransformer(d_model=8, positional_scale=0.5)
        x = random_input(1, 3, 8)
        expected = add(x, scale(sin_at([0], 3, 8), 0.5))
        assert shell(x).allclose(expected)

    def test_offsets_change_output(self, sin_shell):
        x = random_input(1, 3, 8)
        state = sin_shell.create_streaming_state(1)
        first = sin_shell(x, state)
        second = sin_shell(x, state)
        assert not first.allclose(second)
        assert second.allclose(add(x, sin_at([3], 3, 8)))

    def test_chunked_equals_full(self, sin_shell):
        x = random_input(1, 6, 8)
        full = sin_shell(x)

        state = sin_shell.create_streaming_state(1)
        a = sin_shell(Tensor.from_torch(x.data[:, :3]), state)
        b = sin_shell(Tensor.from_torch(x.data[:, 3:]), state)
        assert torch.allclose(torch.cat([a.data, b.data], dim=1), full.data, atol=1e-6)


class TestStreaming:
    def test_offsets_advance_by_chunk_length(self, sin_shell):
        state = sin_shell.create_streaming_state(2)
        sin_shell(random_input(2, 5, 8), state)
        assert state.offset_list() == [5, 5]
        sin_shell(random_input(2, 3, 8), state)
        assert state.offset_list() == [8, 8]

    def test_no_state_no_advance(self, sin_shell):
        state = sin_shell.create_streaming_state(1)
        sin_shell(random_input(1, 4, 8))
        assert state.offset_list() == [0]

    def test_masked_row_held(self, sin_shell):
        state = sin_shell.create_streaming_state(2)
        state.exec_mask = [True, False]
        sin_shell(random_input(2, 4, 8), state)
        assert state.offset_list() == [4, 0]

    def test_reset_restarts_row(self, sin_shell):
        x = random_input(2, 3, 8)
        state = sin_shell.create_streaming_state(2)
        sin_shell(x, state)
        state.reset([False, True])
        out = sin_shell(x, state)
        assert out.allclose(add(x, sin_at([3, 0], 3, 8)))
        assert state.offset_list() == [6, 3]

    def test_batch_larger_than_state_clamps(self, sin_shell):
        state = sin_shell.create_streaming_state(1)
        state.offsets.buffer[0] = 5
        x = random_input(3, 2, 8)
        out = sin_shell(x, state)
        assert out.allclose(add(x, sin_at([5, 5, 5], 2, 8)))
        assert state.offset_list() == [7]

    def test_strict_batch_size(self):
        shell = StreamingTransformer(d_model=8, strict_batch_size=True)
        state = shell.create_streaming_state(1)
        with pytest.raises(BatchSizeMismatch):
            shell(random_input(2, 2, 8), state)
        assert state.offset_list() == [0]

    def test_positions_passed_to_units(self):
        recorder = PositionRecorder()
        shell = StreamingTransformer(
            TransformerConfig(d_model=4, num_layers=1, positional_embedding="none"),
            layer_units=[recorder],
        )
        state = shell.create_streaming_state(2)
        state.offsets.buffer[1] = 10
        shell(random_input(2, 2, 4), state)
        assert recorder.seen == [[0.0, 1.0], [10.0, 11.0]]


class TestLayerUnits:
    def test_custom_unit_without_positions(self):
        shell = StreamingTransformer(
            TransformerConfig(d_model=4, num_layers=1, positional_embedding="none"),
            layer_units=[Doubler()],
        )
        x = random_input(1, 3, 4)
        assert shell(x).allclose(scale(x, 2.0))

    def test_shape_changing_unit(self):
        shell = StreamingTransformer(
            TransformerConfig(d_model=4, num_layers=1),
            layer_units=[Shrinker()],
        )
        with pytest.raises(ShapeMismatch):
            shell(random_input(1, 3, 4))

    def test_rank_must_be_three(self, sin_shell):
        with pytest.raises(ShapeMismatch):
            sin_shell(Tensor.from_torch(torch.randn(3, 8)))

    def test_unit_width_checked(self):
        shell = StreamingTransformer(
            TransformerConfig(d_model=8, num_heads=2, num_layers=1, layer_type="attention")
        )
        with pytest.raises(ShapeMismatch):
            shell(random_input(1, 3, 4))

    @pytest.mark.parametrize("layer_type", ["attention", "feed_forward", "transformer"])
    def test_parametrized_units_preserve_shape(self, layer_type):
        config = TransformerConfig(
            d_model=16, num_heads=4, num_layers=2, dim_feedforward=32,
            layer_type=layer_type, positional_embedding="sin_rope", seed=0,
        )
        shell = build_streaming_transformer(config)
        out = shell(random_input(2, 5, 16))
        assert out.shape == (2, 5, 16)
        assert torch.isfinite(out.data).all()

    def test_per_layer_feedforward(self):
        config = TransformerConfig(
            d_model=8, num_layers=2, dim_feedforward=[16, 24], layer_type="feed_forward",
        )
        shell = StreamingTransformer(config)
        assert [u.dim_feedforward for u in shell.layer_units] == [16, 24]

    def test_seed_is_deterministic(self):
        config = TransformerConfig(
            d_model=8, num_heads=2, num_layers=1, layer_type="transformer", seed=42,
        )
        x = random_input(1, 4, 8)
        assert StreamingTransformer(config)(x).equal(StreamingTransformer(config)(x))


class TestAttentionMask:
    @pytest.fixture
    def attention_config(self):
        return TransformerConfig(
            d_model=8, num_heads=2, num_layers=1,
            layer_type="attention", positional_embedding="none", seed=3,
        )

    def test_causal_ignores_future(self, attention_config):
        shell = StreamingTransformer(attention_config)
        x = random_input(1, 5, 8)
        changed = x.clone()
        changed.data[0, 4] += 10.0

        a = shell(x).data
        b = shell(changed).data
        assert torch.allclose(a[:, :4], b[:, :4], atol=1e-6)
        assert not torch.allclose(a[:, 4], b[:, 4])

    def test_non_causal_sees_future(self, attention_config):
        shell = StreamingTransformer(attention_config.replace(causal=False))
        x = random_input(1, 5, 8)
        changed = x.clone()
        changed.data[0, 4] += 10.0
        assert not torch.allclose(shell(x).data[:, 0], shell(changed).data[:, 0])

    def test_context_one_is_position_local(self, attention_config):
        shell = StreamingTransformer(attention_config.replace(context=1))
        x = random_input(1, 4, 8)
        out = shell(x)
        single = shell(Tensor.from_torch(x.data[:, 2:3]))
        assert torch.allclose(out.data[:, 2], single.data[:, 0], atol=1e-6)


class TestElementTypes:
    def test_float64_input_preserved(self, sin_shell):
        out = sin_shell(random_input(1, 3, 8, dtype=torch.float64))
        assert out.dtype == "float64"

    def test_int32_input_preserved(self):
        shell = StreamingTransformer(d_model=2, positional_embedding="none")
        x = Tensor.from_list([[[1, 2], [3, 4]]], dtype="int32")
        out = shell(x)
        assert out.dtype == "int32"
        assert out.equal(x)

    def test_device_tag_preserved(self, sin_shell):
        x = Tensor.from_torch(torch.randn(1, 2, 8), device="gpu")
        assert sin_shell(x).device == "gpu"

    def test_float64_shell(self):
        shell = StreamingTransformer(
            TransformerConfig(d_model=8, num_heads=2, layer_type="transformer", dtype="float64")
        )
        assert all(p.dtype == torch.float64 for p in shell.parameters())
        out = shell(random_input(1, 3, 8))
        assert out.dtype == "float32"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
