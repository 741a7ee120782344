"""
Logical to physical block mapping for inodes using the classic ext2 layout:
12 direct pointers followed by single, double and triple indirect blocks.

A pointer value of 0 is never a real block. Anywhere in the chain it means the
whole range below it is unallocated, and the logical block reads as zeros.
"""

import struct
from typing import List, Tuple

from errors import UnsupportedOffsetError
from ext2structs import DIND_BLOCK, IND_BLOCK, NDIR_BLOCKS, TIND_BLOCK, Inode

HOLE = 0
POINTER_SIZE = 4


def pointers_per_block(block_size: int) -> int:
    return block_size // POINTER_SIZE


def max_logical_blocks(block_size: int) -> int:
    """Number of logical blocks addressable through direct and indirect pointers"""
    e = pointers_per_block(block_size)
    return NDIR_BLOCKS + e + e * e + e * e * e


def address_path(logical_block: int, block_size: int) -> Tuple[int, List[int]]:
    """
    Split a logical block number into the i_block slot to start from and the
    index to follow inside each pointer block on the way down.

    Returns (slot, indices). Direct blocks have an empty index chain.
    """
    if logical_block < 0:
        raise UnsupportedOffsetError(f"Negative logical block {logical_block}")

    e = pointers_per_block(block_size)

    if logical_block < NDIR_BLOCKS:
        return logical_block, []

    block = logical_block - NDIR_BLOCKS
    if block < e:
        return IND_BLOCK, [block]

    block -= e
    if block < e * e:
        return DIND_BLOCK, [block // e, block % e]

    block -= e * e
    if block < e * e * e:
        return TIND_BLOCK, [block // (e * e), (block // e) % e, block % e]

    raise UnsupportedOffsetError(
        f"Logical block {logical_block} is beyond the triple indirect range "
        f"({max_logical_blocks(block_size)} blocks for {block_size}-byte blocks)"
    )


def read_pointer(store, pointer_block: int, index: int) -> int:
    """Entry ``index`` of the pointer block ``pointer_block``, or HOLE if that block is itself a hole"""
    if pointer_block == HOLE:
        return HOLE
    data = store.read_block(pointer_block)
    return struct.unpack_from("<I", data, index * POINTER_SIZE)[0]


def resolve_block(store, inode: Inode, logical_block: int) -> int:
    """Physical block number backing ``logical_block`` of ``inode``, or HOLE"""
    slot, indices = address_path(logical_block, store.block_size)
    physical = inode.block[slot]
    for index in indices:
        if physical == HOLE:
            break
        physical = read_pointer(store, physical, index)
    return physical
