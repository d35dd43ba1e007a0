#!/usr/bin/env python3
"""
MFS Shell
=========
Interactive command-line front end for MFS filesystem images.

Provides:
  - Image management (createfs, open, savefs, close)
  - File transfer between the host and the image (insert, retrieve)
  - Soft delete / undelete, attributes, XOR cipher
  - Hex dump of byte ranges (read), listing and free space

Usage:
  python cli.py [--image IMAGE] [--block-size N] [--blocks N] [--files N]
                [--blocks-per-file N] [--first-data-block N]
                [--log-level LEVEL] [--log-file PATH] [-c COMMAND ...]
"""

from __future__ import annotations

import argparse
import cmd
import logging
import readline  # noqa: F401  (line editing for cmdloop)
import sys
from dataclasses import dataclass

from fsconfig import FSConfig
from fserrors import ConfigError, InvalidArgument, MFSError
from mfs import MFS

MAX_NUM_ARGUMENTS = 5      # command name included; extra tokens are ignored


@dataclass(frozen=True)
class Command:
    """Command table entry: handler method name and required arguments."""
    handler: str
    min_args: int
    usage: str


COMMANDS: dict[str, Command] = {
    "insert":   Command("cmd_insert", 1, "insert <path>"),
    "retrieve": Command("cmd_retrieve", 1, "retrieve <name> [dest]"),
    "read":     Command("cmd_read", 3, "read <name> <offset> <length>"),
    "delete":   Command("cmd_delete", 1, "delete <name>"),
    "del":      Command("cmd_delete", 1, "del <name>"),
    "undel":    Command("cmd_undel", 1, "undel <name> [slot]"),
    "list":     Command("cmd_list", 0, "list [-h] [-a]"),
    "df":       Command("cmd_df", 0, "df"),
    "open":     Command("cmd_open", 1, "open <image>"),
    "close":    Command("cmd_close", 0, "close"),
    "createfs": Command("cmd_createfs", 1, "createfs <image>"),
    "savefs":   Command("cmd_savefs", 0, "savefs [image]"),
    "attrib":   Command("cmd_attrib", 2, "attrib (+|-)(h|r) <name>"),
    "encrypt":  Command("cmd_encrypt", 2, "encrypt <name> <key>"),
    "decrypt":  Command("cmd_encrypt", 2, "decrypt <name> <key>"),
    "info":     Command("cmd_info", 0, "info"),
    "check":    Command("cmd_check", 0, "check"),
    "help":     Command("cmd_help", 0, "help"),
}

QUIT_COMMANDS = ("quit", "exit", "EOF")


def _parse_int(s: str) -> int:
    try:
        return int(s, 0)
    except ValueError:
        raise InvalidArgument(f"{s!r} is not a number") from None


def _parse_key(s: str) -> int | bytes:
    """A 0-255 integer is a single key byte; anything else is a text key."""
    try:
        value = int(s, 0)
    except ValueError:
        value = None
    if value is not None and 0 <= value <= 0xFF:
        return value
    # argv bytes that are not UTF-8 come through as surrogates
    return s.encode("utf-8", "surrogateescape")


class MFSShell(cmd.Cmd):
    """Interactive shell over one MFS instance."""

    intro = (
        "\n"
        "╔══════════════════════════════════════════════════════════╗\n"
        "║          MFS Filesystem Shell                            ║\n"
        "║   Type 'help' for commands.  'quit' to exit.             ║\n"
        "╚══════════════════════════════════════════════════════════╝\n"
    )
    prompt = "mfs> "

    def __init__(self, fs: MFS, stdin=None, stdout=None, stderr=None):
        super().__init__(stdin=stdin, stdout=stdout)
        self.fs = fs
        self.stderr = stderr if stderr is not None else sys.stderr

    def _out(self, text: str = ""):
        print(text, file=self.stdout)

    def _err(self, text: str):
        print(text, file=self.stderr)

    # -- Dispatch --

    def onecmd(self, line: str) -> bool:
        """Split on whitespace, look up the command table and run one command.
        Returns True when the shell should exit."""
        tokens = line.split()
        if not tokens:
            return False
        tokens = tokens[:MAX_NUM_ARGUMENTS]
        name, args = tokens[0], tokens[1:]

        if name in QUIT_COMMANDS:
            if name == "EOF":
                self._out()
            return True

        command = COMMANDS.get(name)
        if command is None:
            self._err(f"mfs: Invalid command `{name}'")
            return False
        if len(args) < command.min_args:
            self._err(f"{name}: Not enough arguments")
            return False

        try:
            getattr(self, command.handler)(name, args)
        except MFSError as e:
            self._err(f"{name}: ERROR: {e}")
        return False

    def completenames(self, text, *ignored):
        return [n for n in COMMANDS if n.startswith(text)]

    # ================================================================
    #  Commands
    # ================================================================

    # -- Image --

    def cmd_createfs(self, name, args):
        self.fs.create(args[0])
        self._out("File system image created!")

    def cmd_open(self, name, args):
        self.fs.open(args[0])
        self._out(f"Read {self.fs.layout.num_blocks} blocks from {args[0]}")

    def cmd_close(self, name, args):
        self.fs.close()

    def cmd_savefs(self, name, args):
        path = args[0] if args else None
        written = self.fs.save(path)
        self._out(f"Wrote {written} blocks to {path or self.fs.image_path}")

    # -- Files --

    def cmd_insert(self, name, args):
        info = self.fs.insert(args[0])
        self._out(f"Inserted '{info.name}' ({info.size} bytes, "
                  f"{len(info.blocks)} blocks)")

    def cmd_retrieve(self, name, args):
        dest = args[1] if len(args) > 1 else None
        written = self.fs.retrieve(args[0], dest)
        self._out(f"Wrote {written} bytes to {dest or args[0]}")

    def cmd_read(self, name, args):
        offset = _parse_int(args[1])
        length = _parse_int(args[2])
        rows = self.fs.read(args[0], offset, length)
        if not rows:
            self._out(f"read: no data at offset {offset}")
        for row in rows:
            self._out(row)

    def cmd_delete(self, name, args):
        self.fs.delete(args[0])

    def cmd_undel(self, name, args):
        slot = _parse_int(args[1]) if len(args) > 1 else None
        info = self.fs.undelete(args[0], slot)
        self._out(f"Restored '{info.name}' ({info.size} bytes)")

    def cmd_list(self, name, args):
        show_hidden = show_attrib = False
        for opt in args:
            if not opt.startswith("-"):
                continue
            if opt == "-":
                self._err("list: ERROR: missing option parameter")
                continue
            for ch in opt[1:]:
                if ch == "h":
                    show_hidden = True
                elif ch == "a":
                    show_attrib = True
                else:
                    self._err(f"list: unrecognized option {ch}")

        files = self.fs.list(include_hidden=show_hidden)
        if not files:
            self._out("list: No files found.")
            return
        for f in files:
            if show_attrib:
                width = max(1, 66 - len(f.name))
                self._out(f"{f.name}{f.attribute:>{width}}")
            else:
                self._out(f.name)

    def cmd_df(self, name, args):
        self._out(f"{self.fs.df()} bytes free.")

    # -- Attributes / cipher --

    def cmd_attrib(self, name, args):
        self.fs.attrib(args[1], args[0])

    def cmd_encrypt(self, name, args):
        count = self.fs.encrypt(args[0], _parse_key(args[1]))
        verb = "Decrypted" if name == "decrypt" else "Encrypted"
        self._out(f"{verb} '{args[0]}' ({count} bytes)")

    # -- Diagnostics --

    def cmd_info(self, name, args):
        for k, v in self.fs.info().items():
            self._out(f"  {k}: {v}")

    def cmd_check(self, name, args):
        errors = self.fs.check()
        if errors:
            for err in errors:
                self._out(f"  ERROR: {err}")
            self._out(f"{len(errors)} error(s) found")
        else:
            self._out("All files OK")

    def cmd_help(self, name, args):
        self._out("Commands:")
        for cmd_name, command in COMMANDS.items():
            self._out(f"  {command.usage}")
        self._out("  quit | exit")


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mfs",
        description="MFS flat filesystem image shell",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  mfs\n"
               "  mfs --image disk.img\n"
               "  mfs -c 'createfs disk.img' -c 'insert notes.txt' -c savefs\n"
               "  mfs --block-size 512 --blocks 4096 --image small.img\n"
               "\n"
               "Geometry defaults come from MFS_BLOCK_SIZE, MFS_BLOCKS, MFS_FILES,\n"
               "MFS_BLOCKS_PER_FILE and MFS_FIRST_DATA_BLOCK when set.\n"
    )
    parser.add_argument("--image", type=str, default=None,
                        help="Image file to open at startup")
    parser.add_argument("--block-size", type=int, default=None,
                        help="Block size in bytes (default: 1024)")
    parser.add_argument("--blocks", type=int, default=None,
                        help="Total blocks in the image (default: 65536)")
    parser.add_argument("--files", type=int, default=None,
                        help="Directory and inode table size (default: 256)")
    parser.add_argument("--blocks-per-file", type=int, default=None,
                        help="Maximum blocks per file (default: 1024)")
    parser.add_argument("--first-data-block", type=int, default=None,
                        help="Start of the data region (default: right after metadata)")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: WARNING)")
    parser.add_argument("--log-file", default=None,
                        help="Write log records to this file instead of stderr")
    parser.add_argument("-c", "--command", action="append", default=[],
                        help="Run COMMAND and exit instead of the interactive loop (can repeat)")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        filename=args.log_file,
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    try:
        config = FSConfig.from_env().with_overrides(
            block_size=args.block_size,
            num_blocks=args.blocks,
            num_files=args.files,
            blocks_per_file=args.blocks_per_file,
            first_data_block=args.first_data_block,
        )
        fs = MFS(config)
    except ConfigError as e:
        parser.error(str(e))

    shell = MFSShell(fs)
    if args.image:
        shell.onecmd(f"open {args.image}")

    if args.command:
        for line in args.command:
            if shell.onecmd(line):
                break
        return 0

    try:
        shell.cmdloop()
    except KeyboardInterrupt:
        print("\nInterrupted.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
