"""
StreamingState单元测试

测试offset的创建、按mask重置与按exec_mask推进。
"""

import pytest

from stream_engine import StreamingState, InvalidShape, InvalidConfiguration


@pytest.fixture
def state():
    """offset为[5, 6, 7]的状态"""
    s = StreamingState(3)
    s.offsets.buffer[0] = 5
    s.offsets.buffer[1] = 6
    s.offsets.buffer[2] = 7
    return s


class TestCreate:
    def test_fresh_offsets_are_zero(self):
        s = StreamingState(4)
        assert s.offset_list() == [0, 0, 0, 0]
        assert s.offsets.dtype == "int32"
        assert s.offsets.shape == (4,)
        assert s.exec_mask is None

    def test_device_tag(self):
        assert StreamingState(1, device="gpu").offsets.device == "gpu"

    def test_invalid_batch(self):
        with pytest.raises(InvalidShape):
            StreamingState(0)

    def test_invalid_device(self):
        with pytest.raises(InvalidConfiguration):
            StreamingState(1, device="npu")


class TestReset:
    def test_full_reset(self, state):
        state.reset()
        assert state.offset_list() == [0, 0, 0]

    def test_masked_reset(self, state):
        state.reset([True, False, True])
        assert state.offset_list() == [0, 6, 0]

    def test_short_mask_leaves_rest(self, state):
        state.reset([True])
        assert state.offset_list() == [0, 6, 7]

    def test_long_mask_ignored_beyond_batch(self, state):
        state.reset([False, True, False, True, True])
        assert state.offset_list() == [5, 0, 7]

    def test_reset_does_not_touch_exec_mask(self, state):
        state.exec_mask = [True, False, True]
        state.reset()
        assert state.exec_mask == [True, False, True]


class TestAdvance:
    def test_all_rows_without_mask(self, state):
        state.advance(4)
        assert state.offset_list() == [9, 10, 11]

    def test_inactive_rows_held(self, state):
        state.exec_mask = [True, False, True]
        state.advance(4)
        assert state.offset_list() == [9, 6, 11]

    def test_short_exec_mask(self, state):
        state.exec_mask = [True]
        state.advance(2)
        assert state.offset_list() == [7, 6, 7]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
