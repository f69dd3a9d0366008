"""
位置编码单元测试
"""

import math

import pytest
import torch

from stream_engine import Tensor, InvalidConfiguration, InvalidShape, ShapeMismatch
from stream_engine.models import RotaryEmbedding, build_positions, create_sin_embedding


class TestBuildPositions:
    def test_offsets_added_per_row(self):
        pos = build_positions(2, 3, [0, 10])
        assert pos.shape == (2, 3)
        assert pos.dtype == "float64"
        assert pos.tolist() == [[0.0, 1.0, 2.0], [10.0, 11.0, 12.0]]


class TestSinEmbedding:
    def test_shape_and_dtype(self):
        pos = build_positions(2, 3, [0, 0])
        emb = create_sin_embedding(pos, 8)
        assert emb.shape == (2, 3, 8)
        assert emb.dtype == "float32"

    def test_position_zero(self):
        """位置0: 正弦位置为0，余弦位置为1"""
        emb = create_sin_embedding(build_positions(1, 1, [0]), 6, dtype="float64")
        assert emb.tolist() == [[[0.0, 1.0, 0.0, 1.0, 0.0, 1.0]]]

    def test_values_match_formula(self):
        dim = 8
        emb = create_sin_embedding(build_positions(1, 6, [0]), dim, dtype="float64")
        p = 5
        for d in range(0, dim, 2):
            angle = p / (10000.0 ** (d / dim))
            assert emb.data[0, p, d].item() == pytest.approx(math.sin(angle))
            assert emb.data[0, p, d + 1].item() == pytest.approx(math.cos(angle))

    def test_custom_max_period(self):
        emb = create_sin_embedding(build_positions(1, 4, [0]), 4, max_period=100.0, dtype="float64")
        angle = 3 / (100.0 ** (2 / 4))
        assert emb.data[0, 3, 2].item() == pytest.approx(math.sin(angle))

    def test_odd_dim(self):
        """奇数维度时最后一个位置是没有余弦配对的正弦"""
        dim = 5
        emb = create_sin_embedding(build_positions(1, 4, [0]), dim, dtype="float64")
        assert emb.shape == (1, 4, 5)
        angle = 3 / (10000.0 ** (4 / dim))
        assert emb.data[0, 3, 4].item() == pytest.approx(math.sin(angle))

    def test_depends_only_on_absolute_position(self):
        a = create_sin_embedding(build_positions(1, 4, [3]), 8)
        b = create_sin_embedding(build_positions(1, 8, [0]), 8)
        assert torch.equal(a.data[0], b.data[0, 3:7])

    def test_positions_must_be_rank2(self):
        with pytest.raises(ShapeMismatch):
            create_sin_embedding(Tensor.from_list([0.0, 1.0]), 4)

    def test_non_positive_dim(self):
        with pytest.raises(InvalidShape):
            create_sin_embedding(build_positions(1, 2, [0]), 0)


class TestRotaryEmbedding:
    @pytest.fixture
    def rope(self):
        return RotaryEmbedding(head_dim=8)

    def test_odd_head_dim(self):
        with pytest.raises(InvalidConfiguration):
            RotaryEmbedding(head_dim=7)

    def test_shapes_preserved(self, rope):
        q = torch.randn(2, 3, 5, 8)
        k = torch.randn(2, 3, 5, 8)
        positions = torch.arange(5, dtype=torch.float64).unsqueeze(0).expand(2, 5)
        q_rot, k_rot = rope(q, k, positions)
        assert q_rot.shape == q.shape
        assert k_rot.shape == k.shape

    def test_position_zero_is_identity(self, rope):
        q = torch.randn(1, 2, 1, 8)
        k = torch.randn(1, 2, 1, 8)
        positions = torch.zeros(1, 1, dtype=torch.float64)
        q_rot, k_rot = rope(q, k, positions)
        assert torch.allclose(q_rot, q)
        assert torch.allclose(k_rot, k)

    def test_preserves_norm(self, rope):
        q = torch.randn(1, 1, 4, 8, dtype=torch.float64)
        positions = torch.tensor([[3.0, 7.0, 11.0, 100.0]], dtype=torch.float64)
        q_rot, _ = rope(q, q.clone(), positions)
        assert torch.allclose(q_rot.norm(dim=-1), q.norm(dim=-1))

    def test_relative_position(self, rope):
        """q·k只依赖相对位置"""
        q = torch.randn(1, 1, 1, 8, dtype=torch.float64)
        k = torch.randn(1, 1, 1, 8, dtype=torch.float64)

        def score(pq, pk):
            q_rot, _ = rope(q, q, torch.tensor([[pq]], dtype=torch.float64))
            _, k_rot = rope(k, k, torch.tensor([[pk]], dtype=torch.float64))
            return (q_rot * k_rot).sum().item()

        assert score(5.0, 2.0) == pytest.approx(score(13.0, 10.0))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
