from enum import IntEnum


class ExitCode(IntEnum):
    OK = 0
    IO_ERROR = 1
    INVALID_FS = 2
    MEM_ERROR = 3
    INVALID_INODE = 4
    UNSUPPORTED = 5


class Ext2Error(Exception):
    """Base class for everything the reader raises on purpose"""

    exit_code = ExitCode.IO_ERROR


class Ext2IOError(Ext2Error, OSError):
    """Read from the image or write to the output sink failed"""

    exit_code = ExitCode.IO_ERROR


class InvalidFilesystemError(Ext2Error):
    """Bad magic, unsupported block size or otherwise unusable superblock"""

    exit_code = ExitCode.INVALID_FS


class InvalidInodeError(Ext2Error, ValueError):
    """Inode number is zero, too large, or lands outside the block groups"""

    exit_code = ExitCode.INVALID_INODE


class UnsupportedOffsetError(Ext2Error):
    """Logical block lies past the triple-indirect range"""

    exit_code = ExitCode.UNSUPPORTED


class UnsupportedLayoutError(Ext2Error):
    """Inode uses a block layout other than direct/indirect pointers"""

    exit_code = ExitCode.UNSUPPORTED
