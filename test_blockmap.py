import struct

import pytest

from blockmap import HOLE, address_path, max_logical_blocks, pointers_per_block, resolve_block
from errors import UnsupportedOffsetError
from ext2structs import DIND_BLOCK, IND_BLOCK, N_BLOCKS, S_IFREG, TIND_BLOCK, Inode

BLOCK_SIZES = [1024, 2048, 4096]


class CountingStore:
    """In-memory block store that remembers which blocks were read"""

    def __init__(self, block_size):
        self.block_size = block_size
        self.blocks = {}
        self.reads = []

    def put_pointers(self, block_num, entries):
        pointers = [0] * pointers_per_block(self.block_size)
        for index, value in entries.items():
            pointers[index] = value
        self.blocks[block_num] = struct.pack(f"<{len(pointers)}I", *pointers)

    def read_block(self, block_num):
        self.reads.append(block_num)
        return self.blocks.get(block_num, bytes(self.block_size))


def make_inode(pointers):
    block = [0] * N_BLOCKS
    for slot, value in pointers.items():
        block[slot] = value
    return Inode(
        mode=S_IFREG | 0o644, uid=0, size_lo=0, atime=0, ctime=0, mtime=0, dtime=0,
        gid=0, links_count=1, blocks=0, flags=0, osd1=0, block=block,
    )


@pytest.mark.parametrize("block_size", BLOCK_SIZES)
def test_address_path_tier_boundaries(block_size):
    e = block_size // 4
    assert address_path(0, block_size) == (0, [])
    assert address_path(11, block_size) == (11, [])
    assert address_path(12, block_size) == (IND_BLOCK, [0])
    assert address_path(12 + e - 1, block_size) == (IND_BLOCK, [e - 1])
    assert address_path(12 + e, block_size) == (DIND_BLOCK, [0, 0])
    assert address_path(12 + e + e + 3, block_size) == (DIND_BLOCK, [1, 3])
    assert address_path(12 + e + e * e - 1, block_size) == (DIND_BLOCK, [e - 1, e - 1])
    assert address_path(12 + e + e * e, block_size) == (TIND_BLOCK, [0, 0, 0])
    assert address_path(12 + e + e * e + e * e + e + 1, block_size) == (TIND_BLOCK, [1, 1, 1])
    assert address_path(max_logical_blocks(block_size) - 1, block_size) == (TIND_BLOCK, [e - 1, e - 1, e - 1])


@pytest.mark.parametrize("block_size", BLOCK_SIZES)
def test_address_path_past_triple_indirect(block_size):
    with pytest.raises(UnsupportedOffsetError):
        address_path(max_logical_blocks(block_size), block_size)


def test_negative_logical_block_rejected():
    with pytest.raises(UnsupportedOffsetError):
        address_path(-1, 1024)


def test_direct_blocks_need_no_reads():
    store = CountingStore(1024)
    inode = make_inode({i: 100 + i for i in range(12)})
    for i in range(12):
        assert resolve_block(store, inode, i) == 100 + i
    assert store.reads == []


def test_direct_hole():
    store = CountingStore(1024)
    inode = make_inode({0: 50})
    assert resolve_block(store, inode, 1) == HOLE
    assert store.reads == []


@pytest.mark.parametrize("block_size", BLOCK_SIZES)
def test_missing_single_indirect_is_hole_without_reads(block_size):
    store = CountingStore(block_size)
    inode = make_inode({0: 7})
    e = block_size // 4
    for i in range(12, 12 + e):
        assert resolve_block(store, inode, i) == HOLE
    assert store.reads == []


@pytest.mark.parametrize("block_size", BLOCK_SIZES)
def test_single_indirect(block_size):
    e = block_size // 4
    store = CountingStore(block_size)
    store.put_pointers(30, {0: 500, e - 1: 501})
    inode = make_inode({IND_BLOCK: 30})

    assert resolve_block(store, inode, 12) == 500
    assert resolve_block(store, inode, 12 + e - 1) == 501
    assert resolve_block(store, inode, 13) == HOLE
    assert store.reads == [30, 30, 30]


def test_double_indirect():
    store = CountingStore(1024)
    e = 256
    store.put_pointers(40, {0: 41, 2: 42})
    store.put_pointers(41, {0: 900})
    store.put_pointers(42, {5: 901})
    inode = make_inode({DIND_BLOCK: 40})

    assert resolve_block(store, inode, 12 + e) == 900
    assert store.reads == [40, 41]

    store.reads.clear()
    assert resolve_block(store, inode, 12 + e + 2 * e + 5) == 901
    assert store.reads == [40, 42]


def test_double_indirect_zero_mid_chain_stops_reading():
    store = CountingStore(1024)
    store.put_pointers(40, {0: 41})
    inode = make_inode({DIND_BLOCK: 40})

    # second level pointer block for idx1 == 1 is missing
    assert resolve_block(store, inode, 12 + 256 + 256) == HOLE
    assert store.reads == [40]


def test_missing_double_indirect_is_hole_without_reads():
    store = CountingStore(1024)
    inode = make_inode({})
    assert resolve_block(store, inode, 12 + 256 + 1000) == HOLE
    assert store.reads == []


@pytest.mark.parametrize("block_size", BLOCK_SIZES)
def test_triple_indirect(block_size):
    e = block_size // 4
    store = CountingStore(block_size)
    store.put_pointers(60, {1: 61})
    store.put_pointers(61, {2: 62})
    store.put_pointers(62, {3: 7777})
    inode = make_inode({TIND_BLOCK: 60})

    logical = 12 + e + e * e + 1 * e * e + 2 * e + 3
    assert resolve_block(store, inode, logical) == 7777
    assert store.reads == [60, 61, 62]


def test_triple_indirect_zero_mid_chain_stops_reading():
    store = CountingStore(1024)
    store.put_pointers(60, {0: 61})
    store.put_pointers(61, {})
    inode = make_inode({TIND_BLOCK: 60})

    assert resolve_block(store, inode, 12 + 256 + 256 * 256) == HOLE
    assert store.reads == [60, 61]


def test_resolve_past_triple_indirect_fails():
    store = CountingStore(1024)
    inode = make_inode({TIND_BLOCK: 60})
    with pytest.raises(UnsupportedOffsetError):
        resolve_block(store, inode, max_logical_blocks(1024))
    assert store.reads == []
