import struct
from typing import List

import attr

SUPERBLOCK_OFFSET = 1024
SUPERBLOCK_SIZE = 1024
EXT2_SUPER_MAGIC = 0xEF53
VALID_BLOCK_SIZES = (1024, 2048, 4096)

GOOD_OLD_REV = 0
GOOD_OLD_INODE_SIZE = 128
GROUP_DESC_SIZE = 32

# Slots of i_block
NDIR_BLOCKS = 12
IND_BLOCK = 12
DIND_BLOCK = 13
TIND_BLOCK = 14
N_BLOCKS = 15

EXTENTS_FL = 0x80000

S_IFMT = 0o170000
S_IFLNK = 0o120000
S_IFREG = 0o100000
S_IFDIR = 0o040000

# Inline symlink targets live in the 60 bytes of i_block
FAST_SYMLINK_MAX = N_BLOCKS * 4


@attr.s(auto_attribs=True)
class Superblock:
    inodes_count: int
    blocks_count: int
    r_blocks_count: int
    free_blocks_count: int
    free_inodes_count: int
    first_data_block: int
    log_block_size: int
    log_frag_size: int
    blocks_per_group: int
    frags_per_group: int
    inodes_per_group: int
    mtime: int
    wtime: int
    mnt_count: int
    max_mnt_count: int
    magic: int
    state: int
    errors: int
    minor_rev_level: int
    lastcheck: int
    checkinterval: int
    creator_os: int
    rev_level: int
    def_resuid: int
    def_resgid: int
    first_ino: int
    inode_size: int
    block_group_nr: int = 0

    _fmt = "<13I6H4I2HIHH"

    @property
    def block_size(self) -> int:
        return 1024 << self.log_block_size

    @property
    def inode_record_size(self) -> int:
        """Revision 0 images have no s_inode_size and always use 128 bytes"""
        if self.rev_level == GOOD_OLD_REV:
            return GOOD_OLD_INODE_SIZE
        return self.inode_size

    @property
    def group_count(self) -> int:
        return self.blocks_count // self.blocks_per_group

    def pack(self) -> bytes:
        data = struct.pack(self._fmt, *attr.astuple(self))
        return data + b"\x00" * (SUPERBLOCK_SIZE - len(data))

    @classmethod
    def unpack(cls, data: bytes) -> "Superblock":
        size = struct.calcsize(cls._fmt)
        return cls(*struct.unpack(cls._fmt, data[:size]))


@attr.s(auto_attribs=True)
class GroupDesc:
    block_bitmap_block: int
    inode_bitmap_block: int
    inode_table_block: int
    free_blocks_count: int
    free_inodes_count: int
    used_dirs_count: int = 0
    pad: int = 0

    def pack(self) -> bytes:
        return struct.pack("<IIIHHHH12x", *attr.astuple(self))

    @classmethod
    def unpack(cls, data: bytes) -> "GroupDesc":
        return cls(*struct.unpack("<IIIHHHH12x", data[:GROUP_DESC_SIZE]))


@attr.s(auto_attribs=True)
class Inode:
    mode: int
    uid: int
    size_lo: int
    atime: int
    ctime: int
    mtime: int
    dtime: int
    gid: int
    links_count: int
    blocks: int  # 512-byte sectors, not filesystem blocks
    flags: int
    osd1: int
    # 12 direct pointers, then single, double and triple indirect
    block: List[int] = attr.ib(factory=lambda: [0] * N_BLOCKS)
    generation: int = 0
    file_acl: int = 0
    size_high: int = 0
    faddr: int = 0

    _head = "<HHIIIIIHHIII"
    _tail = "<IIII12x"

    @property
    def size(self) -> int:
        return self.size_lo | (self.size_high << 32)

    @property
    def direct(self) -> List[int]:
        return self.block[:NDIR_BLOCKS]

    @property
    def indirect1(self) -> int:
        return self.block[IND_BLOCK]

    @property
    def indirect2(self) -> int:
        return self.block[DIND_BLOCK]

    @property
    def indirect3(self) -> int:
        return self.block[TIND_BLOCK]

    @property
    def uses_extents(self) -> bool:
        return bool(self.flags & EXTENTS_FL)

    def is_fast_symlink(self, block_size: int) -> bool:
        # A symlink whose only allocated block, if any, is its xattr block
        if (self.mode & S_IFMT) != S_IFLNK:
            return False
        xattr_sectors = block_size >> 9 if self.file_acl else 0
        return self.blocks - xattr_sectors == 0 and self.size <= FAST_SYMLINK_MAX

    def inline_data(self) -> bytes:
        """Raw bytes of the pointer table, which is where fast symlinks keep their target"""
        return struct.pack(f"<{N_BLOCKS}I", *self.block)

    def pack(self, record_size: int = GOOD_OLD_INODE_SIZE) -> bytes:
        head = struct.pack(
            self._head,
            self.mode,
            self.uid,
            self.size_lo,
            self.atime,
            self.ctime,
            self.mtime,
            self.dtime,
            self.gid,
            self.links_count,
            self.blocks,
            self.flags,
            self.osd1,
        )
        pointers = struct.pack(f"<{N_BLOCKS}I", *self.block)
        tail = struct.pack(self._tail, self.generation, self.file_acl, self.size_high, self.faddr)
        data = head + pointers + tail
        return data + b"\x00" * (record_size - len(data))

    @classmethod
    def unpack(cls, data: bytes) -> "Inode":
        head = struct.unpack_from(cls._head, data, 0)
        pointers = list(struct.unpack_from(f"<{N_BLOCKS}I", data, 40))
        tail = struct.unpack_from(cls._tail, data, 100)
        return cls(*head, pointers, *tail)
