import struct

import pytest
import torch

from pskernel.blocks import DenseKernelBlock, SparseKernelBlock
from pskernel.codec import ByteSink, ByteSource
from pskernel.errors import DecodeError
from pskernel.optimizers import AdaGrad
from pskernel.values import DenseValue, GradInfo, SparseValue


@pytest.fixture
def policy():
    return AdaGrad(learning_rate=0.1, initial_range=0.05, seed=7)


@pytest.fixture
def sparse_block(policy):
    return SparseKernelBlock(policy, dim=3)


class TestSparseKernelBlockAccess:
    def test_lazy_creation(self, sparse_block):
        assert 42 not in sparse_block
        v = sparse_block.get(42)
        assert isinstance(v, SparseValue)
        assert v.dim == 3
        assert 42 in sparse_block
        assert len(sparse_block) == 1

    def test_existing_value_is_returned(self, sparse_block):
        v = sparse_block.get(5)
        assert sparse_block.get(5) is v
        assert len(sparse_block) == 1

    def test_items_in_insertion_order(self, sparse_block):
        for key in (9, 2, 2**64 - 1, 0):
            sparse_block.get(key)
        assert list(sparse_block) == [9, 2, 2**64 - 1, 0]
        assert [k for k, _ in sparse_block.items()] == [9, 2, 2**64 - 1, 0]

    @pytest.mark.parametrize("key", [-1, 2**64])
    def test_key_out_of_range(self, sparse_block, key):
        with pytest.raises(ValueError):
            sparse_block.get(key)

    def test_distinct_keys_are_isolated(self, sparse_block):
        a = sparse_block.get(1)
        b = sparse_block.get(2)
        b_weight = b.weight.clone()
        for _ in range(5):
            sparse_block.apply(1, GradInfo([1.0, -1.0, 0.5], show=1.0))
        assert torch.equal(b.weight, b_weight)
        assert b.version == 0
        assert b.show == 0.0
        assert a.version == 5

    def test_apply_accepts_plain_gradient(self, sparse_block):
        v = sparse_block.apply(3, [0.1, 0.2, 0.3])
        assert v.version == 1
        assert v.show == 0.0

    def test_show_decay_all(self, sparse_block):
        for key in range(4):
            sparse_block.get(key).add_show(10.0)
        sparse_block.show_decay()
        assert all(v.show < 10.0 for _, v in sparse_block.items())

    def test_cold_keys_and_evict(self, policy):
        block = SparseKernelBlock(policy, dim=2)
        block.get(1).add_show(5.0)
        block.get(2).add_show(0.5)
        block.get(3)
        cold = block.cold_keys(1.0)
        assert cold == [2, 3]
        assert all(block.evict(k) for k in cold)
        assert list(block) == [1]

    def test_evict_inline_value_releases_nothing(self, policy):
        block = SparseKernelBlock(policy, dim=1)
        block.get(7)
        assert block.evict(7) is False
        assert 7 not in block

    def test_evict_missing_key(self, sparse_block):
        with pytest.raises(KeyError):
            sparse_block.evict(123)

    def test_clear_releases_owned_buffers(self, sparse_block):
        values = [sparse_block.get(k) for k in range(3)]
        sparse_block.clear()
        assert len(sparse_block) == 0
        assert all(v.released for v in values)


class TestSparseKernelBlockDump:
    def test_dump_layout(self, policy):
        block = SparseKernelBlock(policy, dim=2)
        v = block.get(42)
        v.weight.copy_(torch.tensor([0.5, -1.0]))
        v.g2sum = 2.0
        v.increase_version()
        v.add_show(7.5)
        sink = ByteSink()
        block.dump(sink)
        expected = struct.pack("<i", 2) + struct.pack(
            "<QfffIf", 42, 0.5, -1.0, 2.0, 1, 7.5
        )
        assert sink.getvalue() == expected
        assert block.data_size() == len(expected)

    def test_empty_dump_is_header_only(self, sparse_block):
        sink = ByteSink()
        sparse_block.dump(sink)
        assert sink.getvalue() == struct.pack("<i", 3)

    def test_load_round_trip(self, policy, sparse_block):
        for key in (11, 22, 33):
            sparse_block.apply(key, GradInfo([0.3, -0.1, 0.2], show=2.0))
        sink = ByteSink()
        sparse_block.dump(sink)

        restored = SparseKernelBlock(policy, dim=3)
        assert restored.load(ByteSource(sink.getvalue())) == 3
        assert list(restored) == [11, 22, 33]
        for (k, a), (_, b) in zip(sparse_block.items(), restored.items()):
            assert torch.equal(a.weight, b.weight)
            assert (a.g2sum, a.version, a.show) == (b.g2sum, b.version, b.show)

    def test_load_width_mismatch(self, policy, sparse_block):
        sparse_block.get(1)
        sink = ByteSink()
        sparse_block.dump(sink)
        with pytest.raises(DecodeError):
            SparseKernelBlock(policy, dim=4).load(ByteSource(sink.getvalue()))

    def test_truncated_load_commits_nothing(self, policy, sparse_block):
        sparse_block.get(1)
        sparse_block.get(2)
        sink = ByteSink()
        sparse_block.dump(sink)
        target = SparseKernelBlock(policy, dim=3)
        with pytest.raises(DecodeError):
            target.load(ByteSource(sink.getvalue()[:-3]))
        assert len(target) == 0

    def test_duplicate_key_in_dump(self, policy):
        record = struct.pack("<QfffIf", 9, 1.0, 2.0, 0.0, 0, 1.0)
        data = struct.pack("<i", 2) + record + record
        target = SparseKernelBlock(policy, dim=2)
        with pytest.raises(DecodeError):
            target.load(ByteSource(data))
        assert len(target) == 0

    def test_load_replaces_existing_value(self, policy):
        src = SparseKernelBlock(policy, dim=2)
        src.get(5).add_show(3.0)
        sink = ByteSink()
        src.dump(sink)

        dst = SparseKernelBlock(policy, dim=2)
        old = dst.get(5)
        dst.load(ByteSource(sink.getvalue()))
        assert old.released
        assert dst.get(5).show == 3.0


class TestDenseKernelBlock:
    def test_lazy_dense_value(self, policy):
        block = DenseKernelBlock(policy, length=4)
        v = block.get(0)
        assert isinstance(v, DenseValue)
        assert v.length == 4
        assert block.get(0) is v

    def test_apply_and_set_weight(self, policy):
        block = DenseKernelBlock(policy, length=2)
        block.apply(1, [1.0, 0.0])
        g2sum = block.get(1).g2sum.clone()
        block.set_weight(1, struct.pack("<ff", 3.0, 4.0))
        assert torch.equal(block.get(1).weight, torch.tensor([3.0, 4.0]))
        assert torch.equal(block.get(1).g2sum, g2sum)

    def test_dump_and_load(self, policy):
        block = DenseKernelBlock(policy, length=3)
        block.apply(0, [1.0, 2.0, 3.0])
        block.apply(4, [-1.0, 0.0, 1.0])
        sink = ByteSink()
        block.dump(sink)
        raw = sink.getvalue()
        assert len(raw) == block.data_size() == 4 + 2 * (8 + 16 * 3)
        assert raw[:4] == struct.pack("<i", 3)

        restored = DenseKernelBlock(policy, length=3)
        restored.load(ByteSource(raw))
        for (ka, a), (kb, b) in zip(block.items(), restored.items()):
            assert ka == kb
            assert torch.equal(a.weight, b.weight)
            assert torch.equal(a.momentum, b.momentum)

    @pytest.mark.parametrize("index", [-1, 2**64])
    def test_index_out_of_range_message(self, policy, index):
        block = DenseKernelBlock(policy, length=3)
        with pytest.raises(ValueError, match=r"in \[0, 18446744073709551615\]"):
            block.get(index)
