import os
from typing import BinaryIO, Optional, Union

from errors import Ext2IOError


class BlockStore:
    """Read-only view of a filesystem image as numbered fixed-size blocks.

    The image may be given as a path (opened here and closed by ``close()``)
    or as an already open binary file object, which stays owned by the caller.
    """

    def __init__(self, image: Union[str, os.PathLike, BinaryIO], block_size: int = 1024):
        self.block_size = block_size
        self._owned = False
        if isinstance(image, (str, os.PathLike)):
            self.image_path = os.fspath(image)
            if not os.path.exists(self.image_path):
                raise FileNotFoundError(f"Filesystem image {self.image_path} not found")
            try:
                self.image_file: Optional[BinaryIO] = open(self.image_path, "rb")
            except OSError as e:
                raise Ext2IOError(f"Failed to open image {self.image_path}: {e}") from e
            self._owned = True
        else:
            self.image_path = getattr(image, "name", "<stream>")
            self.image_file = image

    def read_at(self, offset: int, length: int) -> bytes:
        """Read exactly ``length`` bytes at byte ``offset``"""
        if self.image_file is None:
            raise Ext2IOError("Image is closed")
        try:
            self.image_file.seek(offset)
            data = self.image_file.read(length)
        except (OSError, ValueError) as e:
            raise Ext2IOError(f"Read of {length} bytes at offset {offset} failed: {e}") from e
        if len(data) != length:
            raise Ext2IOError(
                f"Short read at offset {offset}: wanted {length} bytes, got {len(data)}"
            )
        return data

    def read_block(self, block_num: int) -> bytes:
        return self.read_at(block_num * self.block_size, self.block_size)

    def close(self):
        if self.image_file is not None and self._owned:
            self.image_file.close()
        self.image_file = None

    def __enter__(self) -> "BlockStore":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
