#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
ext2 image reader.

Decodes the structures ext2_builder writes (superblock, group
descriptor, bitmaps, inodes, directory entries) and prints a listing:

  python ext2_reader.py ext2-base.img
  python ext2_reader.py ext2-base.img --cat /hello-world
"""

from __future__ import annotations
import argparse
import stat
import struct
import sys
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from ext2_builder import (
    DIR_ENTRY_FORMAT,
    DIR_ENTRY_HEADER_SIZE,
    EXT2_MAGIC,
    EXT2_N_BLOCKS,
    EXT2_NDIR_BLOCKS,
    EXT2_ROOT_INO,
    GROUP_DESC_FORMAT,
    GROUP_DESC_SIZE,
    INODE_FORMAT,
    INODE_SIZE,
    SECTOR_SIZE,
    SUPERBLOCK_FORMAT,
    SUPERBLOCK_OFFSET,
    SUPERBLOCK_SIZE,
    GroupDescriptor,
    Inode,
    Superblock,
)

class Ext2FormatError(ValueError):
    """The image does not hold what an ext2 reader expects."""

# -------------------------
# Record decoders
# -------------------------

def parse_superblock(data: bytes) -> Superblock:
    if len(data) < SUPERBLOCK_SIZE:
        raise Ext2FormatError(f"Superblock needs {SUPERBLOCK_SIZE} bytes, got {len(data)}")
    values = struct.unpack_from(SUPERBLOCK_FORMAT, data, 0)
    return Superblock(*values)

def parse_group_descriptor(data: bytes) -> GroupDescriptor:
    if len(data) < GROUP_DESC_SIZE:
        raise Ext2FormatError(f"Group descriptor needs {GROUP_DESC_SIZE} bytes, got {len(data)}")
    return GroupDescriptor(*struct.unpack_from(GROUP_DESC_FORMAT, data, 0))

def parse_inode(data: bytes) -> Inode:
    if len(data) < INODE_SIZE:
        raise Ext2FormatError(f"Inode needs {INODE_SIZE} bytes, got {len(data)}")
    (mode, uid, size, atime, ctime, mtime, dtime, gid,
     links_count, blocks, flags, _osd1, block) = struct.unpack_from(INODE_FORMAT, data, 0)
    return Inode(
        mode=mode,
        uid=uid,
        size=size,
        atime=atime,
        ctime=ctime,
        mtime=mtime,
        dtime=dtime,
        gid=gid,
        links_count=links_count,
        blocks=blocks,
        flags=flags,
        block=block,
    )

def inode_block_pointers(inode: Inode) -> Tuple[int, ...]:
    return struct.unpack(f"<{EXT2_N_BLOCKS}I", inode.block)

@dataclass(frozen=True)
class DirEntry:
    offset: int
    inode: int
    rec_len: int
    name_len: int
    name: bytes

def iter_dir_entries(block: bytes) -> Iterator[DirEntry]:
    """
    Walk the rec_len chain of one directory block, unused entries
    (inode 0) included. The chain must end exactly at the block end.
    """
    offset = 0
    while offset < len(block):
        if offset + DIR_ENTRY_HEADER_SIZE > len(block):
            raise Ext2FormatError(f"Truncated directory entry at offset {offset}")
        inode, rec_len, name_len = struct.unpack_from(DIR_ENTRY_FORMAT, block, offset)
        if rec_len < DIR_ENTRY_HEADER_SIZE or rec_len % 4 != 0:
            raise Ext2FormatError(f"Bad rec_len {rec_len} at offset {offset}")
        if offset + rec_len > len(block):
            raise Ext2FormatError(f"Entry at offset {offset} runs past the block end")
        if DIR_ENTRY_HEADER_SIZE + name_len > rec_len:
            raise Ext2FormatError(f"Name of entry at offset {offset} overflows its rec_len")
        start = offset + DIR_ENTRY_HEADER_SIZE
        yield DirEntry(offset, inode, rec_len, name_len, bytes(block[start:start + name_len]))
        offset += rec_len

def bit_is_set(bitmap: bytes, index: int) -> bool:
    return bool(bitmap[index // 8] & (1 << (index % 8)))

# -------------------------
# Image access
# -------------------------

class Ext2Image:
    """Read-only view of an ext2 image file."""

    def __init__(self, path: str):
        self.path = path
        self._f = None
        self.superblock: Optional[Superblock] = None
        self.group_descriptor: Optional[GroupDescriptor] = None

    def __enter__(self) -> "Ext2Image":
        self._f = open(self.path, "rb")
        try:
            self._f.seek(SUPERBLOCK_OFFSET)
            self.superblock = parse_superblock(self._f.read(SUPERBLOCK_SIZE))
            if self.superblock.magic != EXT2_MAGIC:
                raise Ext2FormatError(f"{self.path}: bad magic 0x{self.superblock.magic:04X}")
            gdt_block = self.superblock.first_data_block + 1
            self.group_descriptor = parse_group_descriptor(self.read_block(gdt_block))
        except BaseException:
            self._f.close()
            raise
        return self

    def __exit__(self, *exc) -> None:
        self._f.close()

    @property
    def block_size(self) -> int:
        return 1024 << self.superblock.log_block_size

    def read_block(self, number: int) -> bytes:
        if not 0 <= number < self.superblock.blocks_count:
            raise Ext2FormatError(f"Block {number} outside image")
        self._f.seek(number * self.block_size)
        data = self._f.read(self.block_size)
        if len(data) != self.block_size:
            raise Ext2FormatError(f"Short read of block {number}")
        return data

    def read_inode(self, number: int) -> Inode:
        if not 1 <= number <= self.superblock.inodes_count:
            raise Ext2FormatError(f"Inode {number} outside 1..{self.superblock.inodes_count}")
        offset = self.group_descriptor.inode_table * self.block_size + (number - 1) * INODE_SIZE
        self._f.seek(offset)
        return parse_inode(self._f.read(INODE_SIZE))

    def data_blocks(self, inode: Inode) -> List[int]:
        # i_blocks counts 512-byte sectors
        count = inode.blocks * SECTOR_SIZE // self.block_size
        if count > EXT2_NDIR_BLOCKS:
            raise Ext2FormatError("Indirect blocks are not supported")
        return list(inode_block_pointers(inode)[:count])

    def read_data(self, inode: Inode) -> bytes:
        data = b"".join(self.read_block(n) for n in self.data_blocks(inode))
        return data[:inode.size]

    def list_dir(self, number: int) -> List[DirEntry]:
        inode = self.read_inode(number)
        if not stat.S_ISDIR(inode.mode):
            raise Ext2FormatError(f"Inode {number} is not a directory")
        entries = []
        for block in self.data_blocks(inode):
            entries.extend(e for e in iter_dir_entries(self.read_block(block)) if e.inode)
        return entries

    def read_file(self, number: int) -> bytes:
        inode = self.read_inode(number)
        if not stat.S_ISREG(inode.mode):
            raise Ext2FormatError(f"Inode {number} is not a regular file")
        return self.read_data(inode)

    def read_symlink(self, number: int) -> bytes:
        inode = self.read_inode(number)
        if not stat.S_ISLNK(inode.mode):
            raise Ext2FormatError(f"Inode {number} is not a symlink")
        if inode.blocks == 0:
            # fast symlink: target stored in i_block
            return inode.block[:inode.size]
        return self.read_data(inode)

    def lookup(self, path: str) -> int:
        number = EXT2_ROOT_INO
        for part in path.encode("utf-8").split(b"/"):
            if not part:
                continue
            for entry in self.list_dir(number):
                if entry.name == part:
                    number = entry.inode
                    break
            else:
                raise FileNotFoundError(path)
        return number

    def block_in_use(self, number: int) -> bool:
        bitmap = self.read_block(self.group_descriptor.block_bitmap)
        return bit_is_set(bitmap, number - self.superblock.first_data_block)

    def inode_in_use(self, number: int) -> bool:
        bitmap = self.read_block(self.group_descriptor.inode_bitmap)
        return bit_is_set(bitmap, number - 1)

    def walk(self, number: int = EXT2_ROOT_INO, prefix: str = "") -> Iterator[Tuple[str, int, Inode]]:
        """Yield (path, inode number, inode) depth first, root first."""
        if not prefix:
            yield "/", number, self.read_inode(number)
        for entry in self.list_dir(number):
            if entry.name in (b".", b".."):
                continue
            path = f"{prefix}/{entry.name.decode('utf-8', errors='replace')}"
            inode = self.read_inode(entry.inode)
            yield path, entry.inode, inode
            if stat.S_ISDIR(inode.mode):
                yield from self.walk(entry.inode, path)

# -------------------------
# Listing
# -------------------------

def describe(img: Ext2Image, path: str, number: int, inode: Inode) -> str:
    line = f"{number:>5}  {stat.filemode(inode.mode)}  {inode.links_count:>2}  {inode.uid:>5}:{inode.gid:<5}  {inode.size:>8}  {path}"
    if stat.S_ISLNK(inode.mode):
        line += " -> " + img.read_symlink(number).decode("utf-8", errors="replace")
    return line

def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="List the contents of an ext2 image.")
    ap.add_argument("image", help="Path to image file")
    ap.add_argument("--cat", metavar="PATH", help="Print the content of a regular file instead")
    args = ap.parse_args(argv)

    try:
        with Ext2Image(args.image) as img:
            if args.cat:
                sys.stdout.buffer.write(img.read_file(img.lookup(args.cat)))
                sys.stdout.flush()
                return 0

            sb = img.superblock
            gd = img.group_descriptor
            label = sb.volume_name.rstrip(b"\x00").decode("ascii", errors="replace")
            sys.stdout.write(
                f"ext2 image {args.image}:\n"
                f"  label: {label}\n"
                f"  block: {img.block_size} bytes\n"
                f"  blocks: {sb.blocks_count} ({sb.free_blocks_count} free)\n"
                f"  inodes: {sb.inodes_count} ({sb.free_inodes_count} free)\n"
                f"  inode table: block {gd.inode_table}\n"
                f"  directories: {gd.used_dirs_count}\n"
            )
            for path, number, inode in img.walk():
                sys.stdout.write(describe(img, path, number, inode) + "\n")
    except (OSError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
