import argparse
import sys

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from errors import Ext2Error, ExitCode
from ext2reader import open_image
from ext2structs import S_IFDIR, S_IFLNK, S_IFREG

console = Console(stderr=True)

TYPE_NAMES = {
    S_IFDIR: "directory",
    S_IFLNK: "symbolic link",
    S_IFREG: "regular file",
}


class ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        console.print(f"[bold red]ERROR:[/bold red] {escape(message)}")
        sys.exit(ExitCode.INVALID_INODE)


def positive_int(value: str) -> int:
    try:
        number = int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid inode number: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"inode number must be positive, got {number}")
    return number


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="ext2cat",
        description="Copy the content of an inode out of an ext2 image without mounting it",
    )
    parser.add_argument("image", help="Path to the ext2 image")
    parser.add_argument("inode", type=positive_int, help="Inode number of the file to extract")
    parser.add_argument("-o", "--output", help="Write to this file instead of stdout")
    parser.add_argument("--stat", action="store_true", help="Show superblock and inode details instead of extracting")
    return parser


def print_stat(image, inode_num: int):
    sb = image.superblock
    info = image.stat(inode_num)

    table = Table(title=f"{escape(image.store.image_path)}: inode {inode_num}", show_header=False)
    table.add_column("field", style="bold cyan")
    table.add_column("value")
    table.add_row("Block size", str(image.block_size))
    table.add_row("Inode size", str(image.inode_size))
    table.add_row("Blocks", f"{sb.blocks_count} ({sb.blocks_per_group} per group)")
    table.add_row("Inodes", f"{sb.inodes_count} ({sb.inodes_per_group} per group)")
    table.add_row("Groups", str(image.group_count))
    table.add_row("Group / index", f"{info['group']} / {info['index']}")
    table.add_row("Inode table", str(info["inode_table"]))
    table.add_row("Type", TYPE_NAMES.get(info["type"], "other"))
    table.add_row("Access", f"{info['mode'] & 0o7777:04o}")
    table.add_row("Uid / Gid", f"{info['uid']} / {info['gid']}")
    table.add_row("Links", str(info["links"]))
    table.add_row("Size", str(info["size"]))
    table.add_row("Sectors", str(info["blocks"]))
    table.add_row("Flags", f"{info['flags']:#x}")
    console.print(table)


def run(args) -> int:
    with open_image(args.image) as image:
        if args.stat:
            print_stat(image, args.inode)
            return ExitCode.OK

        # Bad inode numbers fail here, before the output file is created
        inode = image.get_inode(args.inode)
        if args.output:
            with open(args.output, "wb") as sink:
                image.extract_inode(inode, sink)
        else:
            sink = sys.stdout.buffer
            image.extract_inode(inode, sink)
            sink.flush()
    return ExitCode.OK


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return run(args)
    except Ext2Error as e:
        console.print(f"[bold red]ERROR:[/bold red] {escape(str(e))}")
        return e.exit_code
    except MemoryError:
        console.print("[bold red]ERROR:[/bold red] Memory allocation failed")
        return ExitCode.MEM_ERROR
    except OSError as e:
        console.print(f"[bold red]ERROR:[/bold red] {escape(str(e))}")
        return ExitCode.IO_ERROR


if __name__ == "__main__":
    sys.exit(main())
