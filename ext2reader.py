from typing import BinaryIO, Dict, Iterator, Tuple, Union

from blockmap import HOLE, address_path, resolve_block
from blockstore import BlockStore
from errors import Ext2IOError, InvalidFilesystemError, InvalidInodeError, UnsupportedLayoutError
from ext2structs import (
    EXT2_SUPER_MAGIC,
    GOOD_OLD_INODE_SIZE,
    GROUP_DESC_SIZE,
    S_IFMT,
    SUPERBLOCK_OFFSET,
    SUPERBLOCK_SIZE,
    VALID_BLOCK_SIZES,
    GroupDesc,
    Inode,
    Superblock,
)


class Ext2Image:
    """Read-only ext2 image: metadata lookup and file content reconstruction"""

    def __init__(self, image: Union[str, BinaryIO]):
        self.store = BlockStore(image)
        try:
            self.superblock = self._load_superblock()
        except Exception:
            self.store.close()
            raise
        self.store.block_size = self.block_size

    @property
    def block_size(self) -> int:
        return self.superblock.block_size

    @property
    def inode_size(self) -> int:
        return self.superblock.inode_record_size

    @property
    def group_count(self) -> int:
        return self.superblock.group_count

    def _load_superblock(self) -> Superblock:
        """Read and validate the superblock"""
        sb = Superblock.unpack(self.store.read_at(SUPERBLOCK_OFFSET, SUPERBLOCK_SIZE))

        if sb.magic != EXT2_SUPER_MAGIC:
            raise InvalidFilesystemError(
                f"Not an ext2 filesystem (magic {sb.magic:#06x}, expected {EXT2_SUPER_MAGIC:#06x})"
            )
        if sb.block_size not in VALID_BLOCK_SIZES:
            raise InvalidFilesystemError(f"Invalid block size (s_log_block_size={sb.log_block_size})")
        if sb.blocks_per_group == 0 or sb.inodes_per_group == 0:
            raise InvalidFilesystemError("Superblock has zero blocks or inodes per group")
        if sb.inode_record_size < GOOD_OLD_INODE_SIZE:
            raise InvalidFilesystemError(f"Invalid inode size {sb.inode_record_size}")

        return sb

    def _group_desc_block(self) -> int:
        # The descriptor table starts in the block after the superblock
        return 2 if self.block_size == 1024 else 1

    def _resolve_inode_location(self, inode_num: int) -> Tuple[int, int, GroupDesc, int]:
        """
        Calculates the group, index, group descriptor, and disk offset for a given inode number.
        Returns: (group_num, inode_index, group_desc, inode_offset)
        """
        sb = self.superblock
        if inode_num <= 0 or inode_num > sb.inodes_count:
            raise InvalidInodeError(f"Invalid inode number {inode_num} (valid range 1..{sb.inodes_count})")

        group_num = (inode_num - 1) // sb.inodes_per_group
        inode_index = (inode_num - 1) % sb.inodes_per_group

        if group_num >= self.group_count:
            raise InvalidInodeError(
                f"Inode {inode_num} is in group {group_num}, but the filesystem has {self.group_count}"
            )

        group_desc = self.get_group_desc(group_num)
        inode_offset = group_desc.inode_table_block * self.block_size + inode_index * self.inode_size

        return group_num, inode_index, group_desc, inode_offset

    def get_group_desc(self, group_num: int) -> GroupDesc:
        offset = self._group_desc_block() * self.block_size + group_num * GROUP_DESC_SIZE
        return GroupDesc.unpack(self.store.read_at(offset, GROUP_DESC_SIZE))

    def get_inode(self, inode_num: int) -> Inode:
        """Get inode by number"""
        _, _, _, inode_offset = self._resolve_inode_location(inode_num)
        return Inode.unpack(self.store.read_at(inode_offset, self.inode_size))

    def resolve_block(self, inode: Inode, logical_block: int) -> int:
        return resolve_block(self.store, inode, logical_block)

    def iter_file_chunks(self, inode: Inode) -> Iterator[bytes]:
        """
        Yield the content of ``inode`` block by block, in logical order.

        Holes come out as zero bytes. Every chunk is one block long except the
        last, which is cut to the file size.
        """
        if inode.is_fast_symlink(self.block_size):
            yield inode.inline_data()[: inode.size]
            return
        if inode.uses_extents:
            raise UnsupportedLayoutError("Inode uses extents, only indirect block maps are supported")

        file_size = inode.size
        block_size = self.block_size
        block_count = (file_size + block_size - 1) // block_size
        if block_count:
            # Raises for sizes past the triple indirect range before anything is emitted
            address_path(block_count - 1, block_size)

        for b in range(block_count):
            length = block_size
            if b == block_count - 1:
                length = file_size % block_size or block_size

            physical = resolve_block(self.store, inode, b)
            if physical == HOLE:
                yield bytes(length)
            else:
                yield self.store.read_block(physical)[:length]

    def extract(self, inode_num: int, sink: BinaryIO) -> int:
        """Write the content of inode ``inode_num`` to ``sink``; returns bytes written"""
        return self.extract_inode(self.get_inode(inode_num), sink)

    def extract_inode(self, inode: Inode, sink: BinaryIO) -> int:
        written = 0
        for chunk in self.iter_file_chunks(inode):
            try:
                sink.write(chunk)
            except OSError as e:
                raise Ext2IOError(f"Write to output failed after {written} bytes: {e}") from e
            written += len(chunk)
        return written

    def read_file(self, inode_num: int) -> bytes:
        inode = self.get_inode(inode_num)
        return b"".join(self.iter_file_chunks(inode))

    def stat(self, inode_num: int) -> Dict[str, int]:
        inode = self.get_inode(inode_num)
        group_num, inode_index, group_desc, _ = self._resolve_inode_location(inode_num)
        return {
            "inode": inode_num,
            "group": group_num,
            "index": inode_index,
            "inode_table": group_desc.inode_table_block,
            "size": inode.size,
            "mode": inode.mode,
            "type": inode.mode & S_IFMT,
            "links": inode.links_count,
            "uid": inode.uid,
            "gid": inode.gid,
            "blocks": inode.blocks,
            "flags": inode.flags,
        }

    def close(self):
        self.store.close()

    def __enter__(self) -> "Ext2Image":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


def open_image(image: Union[str, BinaryIO]) -> Ext2Image:
    """Open an ext2 image for reading"""
    return Ext2Image(image)
