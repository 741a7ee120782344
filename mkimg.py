"""
Builds small ext2 images with hand-placed files, used as test fixtures.

Only what the reader looks at is made realistic: superblock, group descriptor
table, inode tables, bitmaps, data blocks and indirect pointer blocks. There
are no directories, so files are reachable by inode number only.
"""

import os
import struct
from typing import BinaryIO, Dict, Iterable, List, Optional

from blockmap import HOLE, address_path, pointers_per_block
from ext2structs import (
    DIND_BLOCK,
    EXT2_SUPER_MAGIC,
    GOOD_OLD_INODE_SIZE,
    GROUP_DESC_SIZE,
    IND_BLOCK,
    NDIR_BLOCKS,
    S_IFLNK,
    S_IFREG,
    SUPERBLOCK_OFFSET,
    TIND_BLOCK,
    GroupDesc,
    Inode,
    Superblock,
)

DEFAULT_BLOCK_SIZE = 1024
DEFAULT_BLOCKS_COUNT = 1024
DEFAULT_INODES_PER_GROUP = 32


def create_empty_image(image_path: str, size_bytes: int):
    """Create an empty image file"""
    with open(image_path, "wb") as f:
        f.truncate(size_bytes)


def _set_bit(bitmap: bytearray, index: int):
    bitmap[index // 8] |= 1 << (index % 8)


class ImageBuilder:
    """Lays out an ext2 filesystem in ``image_path`` and places files into it"""

    def __init__(
        self,
        image_path: str,
        block_size: int = DEFAULT_BLOCK_SIZE,
        blocks_count: int = DEFAULT_BLOCKS_COUNT,
        blocks_per_group: Optional[int] = None,
        inodes_per_group: int = DEFAULT_INODES_PER_GROUP,
        inode_size: int = GOOD_OLD_INODE_SIZE,
        rev_level: int = 1,
    ):
        self.image_path = image_path
        self.block_size = block_size
        self.blocks_count = blocks_count
        self.blocks_per_group = blocks_per_group or min(blocks_count, block_size * 8)
        self.inodes_per_group = inodes_per_group
        self.inode_size = inode_size if rev_level else GOOD_OLD_INODE_SIZE
        self.rev_level = rev_level
        self.first_data_block = 1 if block_size == 1024 else 0
        self.num_groups = blocks_count // self.blocks_per_group

        create_empty_image(image_path, blocks_count * block_size)
        self.image_file: BinaryIO = open(image_path, "r+b")

        self.group_descriptors: List[GroupDesc] = []
        self.next_free_block = 0
        self._create_block_groups()
        self._create_superblock()

    @property
    def gdt_block(self) -> int:
        return self.first_data_block + 1

    @property
    def inodes_count(self) -> int:
        return self.num_groups * self.inodes_per_group

    def _inode_table_blocks(self) -> int:
        return (self.inodes_per_group * self.inode_size + self.block_size - 1) // self.block_size

    def _group_start(self, group_num: int) -> int:
        return self.first_data_block + group_num * self.blocks_per_group

    def _create_block_groups(self):
        """Place bitmaps and inode table of every group, then write the descriptor table"""
        gdt_blocks = (self.num_groups * GROUP_DESC_SIZE + self.block_size - 1) // self.block_size
        table_blocks = self._inode_table_blocks()

        for group_num in range(self.num_groups):
            start = self._group_start(group_num)
            if group_num == 0:
                # superblock and descriptor table come first
                start = self.gdt_block + gdt_blocks
            group_desc = GroupDesc(
                block_bitmap_block=start,
                inode_bitmap_block=start + 1,
                inode_table_block=start + 2,
                free_blocks_count=self.blocks_per_group,
                free_inodes_count=self.inodes_per_group,
            )
            self.group_descriptors.append(group_desc)
            for block in range(self._group_start(group_num), start + 2 + table_blocks):
                self._mark_block_used(block)

        self.next_free_block = self.group_descriptors[0].inode_table_block + table_blocks
        self._write_group_descriptors()

    def _create_superblock(self):
        self.superblock = Superblock(
            inodes_count=self.inodes_count,
            blocks_count=self.blocks_count,
            r_blocks_count=0,
            free_blocks_count=sum(gd.free_blocks_count for gd in self.group_descriptors),
            free_inodes_count=self.inodes_count,
            first_data_block=self.first_data_block,
            log_block_size=(self.block_size // 1024).bit_length() - 1,
            log_frag_size=(self.block_size // 1024).bit_length() - 1,
            blocks_per_group=self.blocks_per_group,
            frags_per_group=self.blocks_per_group,
            inodes_per_group=self.inodes_per_group,
            mtime=0,
            wtime=0,
            mnt_count=0,
            max_mnt_count=0xFFFF,
            magic=EXT2_SUPER_MAGIC,
            state=1,
            errors=1,
            minor_rev_level=0,
            lastcheck=0,
            checkinterval=0,
            creator_os=0,
            rev_level=self.rev_level,
            def_resuid=0,
            def_resgid=0,
            first_ino=11,
            inode_size=self.inode_size if self.rev_level else 0,
        )
        self.write_superblock(self.superblock)

    def write_superblock(self, superblock: Superblock):
        self.image_file.seek(SUPERBLOCK_OFFSET)
        self.image_file.write(superblock.pack())
        self.image_file.flush()

    def _write_group_descriptors(self):
        self.image_file.seek(self.gdt_block * self.block_size)
        for group_desc in self.group_descriptors:
            self.image_file.write(group_desc.pack())

    def _update_bitmap(self, bitmap_block: int, index: int):
        self.image_file.seek(bitmap_block * self.block_size)
        bitmap = bytearray(self.image_file.read(self.block_size))
        _set_bit(bitmap, index)
        self.image_file.seek(bitmap_block * self.block_size)
        self.image_file.write(bitmap)

    def _mark_block_used(self, block_num: int):
        group_num = (block_num - self.first_data_block) // self.blocks_per_group
        if not 0 <= group_num < self.num_groups:
            return
        group_desc = self.group_descriptors[group_num]
        index = (block_num - self.first_data_block) % self.blocks_per_group
        self._update_bitmap(group_desc.block_bitmap_block, index)
        group_desc.free_blocks_count = max(group_desc.free_blocks_count - 1, 0)

    def allocate_block(self) -> int:
        """Hand out blocks in increasing order, skipping other groups' metadata"""
        while True:
            block = self.next_free_block
            if block >= self.blocks_count:
                raise OSError("No free blocks available")
            self.next_free_block += 1
            if not any(gd.block_bitmap_block <= block < gd.inode_table_block + self._inode_table_blocks()
                       for gd in self.group_descriptors):
                self._mark_block_used(block)
                return block

    def write_block(self, block_num: int, data: bytes):
        if len(data) > self.block_size:
            raise ValueError(f"{len(data)} bytes do not fit in a {self.block_size}-byte block")
        self.image_file.seek(block_num * self.block_size)
        self.image_file.write(data + b"\x00" * (self.block_size - len(data)))

    def _write_pointer_block(self, pointers: List[int]) -> int:
        block = self.allocate_block()
        self.write_block(block, struct.pack(f"<{len(pointers)}I", *pointers))
        return block

    def _build_tree(self, mapping: Dict[int, int], slot: int) -> int:
        """
        Write the pointer blocks hanging off i_block[slot] for every logical
        block in ``mapping`` that routes through it. Returns the top pointer
        block, or HOLE when nothing in the range is allocated.
        """
        e = pointers_per_block(self.block_size)
        depth = slot - IND_BLOCK + 1
        tree: Dict = {}
        for logical, physical in sorted(mapping.items()):
            path_slot, indices = address_path(logical, self.block_size)
            if path_slot != slot:
                continue
            node = tree
            for index in indices[:-1]:
                node = node.setdefault(index, {})
            node[indices[-1]] = physical

        def write_node(node: Dict, level: int) -> int:
            if not node:
                return HOLE
            pointers = [HOLE] * e
            for index, child in node.items():
                pointers[index] = child if level == depth else write_node(child, level + 1)
            return self._write_pointer_block(pointers)

        return write_node(tree, 1)

    def write_inode(self, inode_num: int, inode: Inode):
        group_num = (inode_num - 1) // self.inodes_per_group
        index = (inode_num - 1) % self.inodes_per_group
        group_desc = self.group_descriptors[group_num]
        self.image_file.seek(group_desc.inode_table_block * self.block_size + index * self.inode_size)
        self.image_file.write(inode.pack(self.inode_size))
        self._update_bitmap(group_desc.inode_bitmap_block, index)
        group_desc.free_inodes_count = max(group_desc.free_inodes_count - 1, 0)

    def add_file(
        self,
        inode_num: int,
        size: int,
        blocks: Dict[int, bytes],
        mode: int = S_IFREG | 0o644,
        flags: int = 0,
    ) -> Inode:
        """
        Create a regular file of ``size`` bytes whose logical blocks listed in
        ``blocks`` hold the given content. Every other logical block is a hole.
        """
        mapping: Dict[int, int] = {}
        for logical, content in sorted(blocks.items()):
            physical = self.allocate_block()
            self.write_block(physical, content)
            mapping[logical] = physical

        pointers = [HOLE] * (NDIR_BLOCKS + 3)
        for logical, physical in mapping.items():
            if logical < NDIR_BLOCKS:
                pointers[logical] = physical
        for slot in (IND_BLOCK, DIND_BLOCK, TIND_BLOCK):
            pointers[slot] = self._build_tree(mapping, slot)

        inode = Inode(
            mode=mode,
            uid=0,
            size_lo=size & 0xFFFFFFFF,
            atime=0,
            ctime=0,
            mtime=0,
            dtime=0,
            gid=0,
            links_count=1,
            blocks=self._sectors(len(mapping)),
            flags=flags,
            osd1=0,
            block=pointers,
            size_high=size >> 32,
        )
        self.write_inode(inode_num, inode)
        return inode

    def add_data_file(self, inode_num: int, data: bytes, holes: Iterable[int] = ()) -> Inode:
        """Create a file holding ``data``; logical blocks in ``holes`` are left unallocated"""
        holes = set(holes)
        blocks = {}
        for logical in range(0, (len(data) + self.block_size - 1) // self.block_size):
            if logical not in holes:
                blocks[logical] = data[logical * self.block_size : (logical + 1) * self.block_size]
        return self.add_file(inode_num, len(data), blocks)

    def add_fast_symlink(self, inode_num: int, target: bytes) -> Inode:
        """Symlink whose target is stored inline in the pointer table"""
        raw = target + b"\x00" * (4 * (NDIR_BLOCKS + 3) - len(target))
        inode = Inode(
            mode=S_IFLNK | 0o777,
            uid=0,
            size_lo=len(target),
            atime=0,
            ctime=0,
            mtime=0,
            dtime=0,
            gid=0,
            links_count=1,
            blocks=0,
            flags=0,
            osd1=0,
            block=list(struct.unpack(f"<{NDIR_BLOCKS + 3}I", raw)),
        )
        self.write_inode(inode_num, inode)
        return inode

    def _sectors(self, data_blocks: int) -> int:
        return data_blocks * (self.block_size // 512)

    def close(self):
        if self.image_file:
            self._write_group_descriptors()
            self.superblock.free_blocks_count = sum(gd.free_blocks_count for gd in self.group_descriptors)
            self.superblock.free_inodes_count = sum(gd.free_inodes_count for gd in self.group_descriptors)
            self.write_superblock(self.superblock)
            os.fsync(self.image_file.fileno())
            self.image_file.close()
            self.image_file = None

    def __enter__(self) -> "ImageBuilder":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


def mkfs(image_path: str, **kwargs) -> ImageBuilder:
    """Initialize an empty ext2 filesystem in the image file"""
    return ImageBuilder(image_path, **kwargs)
