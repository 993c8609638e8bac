#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
ext2 image generator (revision 0, single block group).

Creates:
- Superblock (always at byte offset 1024)
- Block group descriptor table
- Block and inode bitmaps
- Inode table
- Root directory, lost+found, one regular file and one symbolic link

Default geometry is 1024-byte blocks, 1024 blocks and 128 inodes, which
gives a 1 MiB image with this tree:

  /              inode 2   directory
  /lost+found    inode 11  directory
  /hello-world   inode 12  regular file ("Hello world\\n")
  /hello         inode 13  symlink -> hello-world

Usage examples:
  python ext2_builder.py
  python ext2_builder.py --output test.img --blocks 2048 --inodes 256
  python ext2_builder.py --block-size 4096 --size 8MiB --label TESTVOL
  SOURCE_DATE_EPOCH=0 python ext2_builder.py --output reproducible.img
"""

from __future__ import annotations
import argparse
import dataclasses
import errno
import os
import struct
import sys
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

# -------------------------
# Format constants
# -------------------------

SUPERBLOCK_OFFSET = 1024
SUPERBLOCK_SIZE = 1024
GROUP_DESC_SIZE = 32
INODE_SIZE = 128
SECTOR_SIZE = 512

EXT2_MAGIC = 0xEF53
EXT2_GOOD_OLD_REV = 0
EXT2_VALID_FS = 1
EXT2_ERRORS_CONTINUE = 1
EXT2_OS_LINUX = 0

EXT2_BAD_INO = 1
EXT2_ROOT_INO = 2
EXT2_GOOD_OLD_FIRST_INO = 11

EXT2_NDIR_BLOCKS = 12
EXT2_N_BLOCKS = 15
EXT2_NAME_LEN = 255

S_IFLNK = 0xA000
S_IFREG = 0x8000
S_IFDIR = 0x4000

DIR_MODE = S_IFDIR | 0o755
FILE_MODE = S_IFREG | 0o644
SYMLINK_MODE = S_IFLNK | 0o644

BLOCK_SIZES = (1024, 2048, 4096)

# s_inodes_count .. s_def_resgid, s_pad[5], s_uuid, s_volume_name
SUPERBLOCK_FORMAT = "<7Ii5IHh4H4I2H20x16s16s"
# bg_block_bitmap, bg_inode_bitmap, bg_inode_table, free blocks/inodes,
# used dirs, then bg_pad + bg_reserved[3]
GROUP_DESC_FORMAT = "<3I3H14x"
# i_mode .. i_reserved1 and the 60-byte i_block array; the tail is zero
INODE_FORMAT = "<2H5I2H3I60s"
DIR_ENTRY_FORMAT = "<IHH"
DIR_ENTRY_HEADER_SIZE = struct.calcsize(DIR_ENTRY_FORMAT)

# Fast symlinks keep the target inside i_block
FAST_SYMLINK_MAX = EXT2_N_BLOCKS * 4 - 1

DEFAULT_OUTPUT = "ext2-base.img"
DEFAULT_VOLUME_NAME = "ext2-base"
DEFAULT_UUID = uuid.UUID("5a1eab1e-1337-1337-1337-c0ffeec0ffee")

# -------------------------
# Helpers
# -------------------------

SIZE_SUFFIXES = {
    "B": 1,
    "K": 1024,
    "KB": 1000,
    "KIB": 1024,
    "M": 1024**2,
    "MB": 1000**2,
    "MIB": 1024**2,
    "G": 1024**3,
    "GB": 1000**3,
    "GIB": 1024**3,
}

def parse_size(s: str) -> int:
    s = s.strip()
    if s.isdigit():
        return int(s)
    # allow "1MiB", "2MB", "512K", "4096"
    num = ""
    suf = ""
    for ch in s:
        if ch.isdigit() or ch == ".":
            num += ch
        else:
            suf += ch
    if not num:
        raise ValueError(f"Bad size: {s}")
    mul = SIZE_SUFFIXES.get(suf.strip().upper())
    if mul is None:
        raise ValueError(f"Unknown size suffix: {suf.strip()}")
    return int(float(num) * mul)

def div_ceil(a: int, b: int) -> int:
    return (a + b - 1) // b

def clamp_label(label: str) -> bytes:
    # s_volume_name is 16 bytes, NUL padded
    return label.encode("ascii", errors="replace")[:16].ljust(16, b"\x00")

def validate_name(name: bytes) -> None:
    """Reject names a reader could not resolve back to the entry."""
    if not name or len(name) > EXT2_NAME_LEN:
        raise ValueError(f"File name must be 1..{EXT2_NAME_LEN} bytes: {name!r}")
    if b"/" in name or b"\x00" in name:
        raise ValueError(f"File name must not contain '/' or NUL: {name!r}")

def current_time() -> int:
    return int(time.time())

# -------------------------
# Configuration and layout
# -------------------------

@dataclass
class Ext2Params:
    output: str
    block_size: int
    blocks_count: int
    inodes_count: int
    volume_name: bytes
    volume_uuid: bytes
    uid: int = 1000
    gid: int = 1000
    timestamp: Optional[int] = None
    lost_found_name: bytes = b"lost+found"
    file_name: bytes = b"hello-world"
    file_content: bytes = b"Hello world\n"
    symlink_name: bytes = b"hello"
    symlink_target: bytes = b"hello-world"

@dataclass(frozen=True)
class Reservation:
    kind: str       # "block" or "inode"
    number: int
    purpose: str

@dataclass(frozen=True)
class Ext2Layout:
    """
    Block and inode numbers for every structure in the image.

    The reservation table is the single source for the bitmaps and the
    free counts: everything listed there is allocated, everything else
    inside the group is free.
    """
    params: Ext2Params
    first_data_block: int
    superblock_block: int
    gdt_block: int
    block_bitmap_block: int
    inode_bitmap_block: int
    inode_table_block: int
    inode_table_blocks: int
    root_dir_block: int
    lost_found_dir_block: int
    file_blocks: Tuple[int, ...]
    symlink_block: Optional[int]
    lost_found_ino: int
    file_ino: int
    symlink_ino: int
    reservations: Tuple[Reservation, ...]

    @property
    def block_size(self) -> int:
        return self.params.block_size

    @property
    def blocks_count(self) -> int:
        return self.params.blocks_count

    @property
    def inodes_count(self) -> int:
        return self.params.inodes_count

    @property
    def image_size(self) -> int:
        return self.blocks_count * self.block_size

    @property
    def log_block_size(self) -> int:
        return self.block_size.bit_length() - 11

    @property
    def blocks_per_group(self) -> int:
        return self.block_size * 8

    @property
    def reserved_blocks(self) -> Tuple[int, ...]:
        return tuple(r.number for r in self.reservations if r.kind == "block")

    @property
    def reserved_inodes(self) -> Tuple[int, ...]:
        return tuple(r.number for r in self.reservations if r.kind == "inode")

    @property
    def last_block(self) -> int:
        return max(self.reserved_blocks)

    @property
    def last_ino(self) -> int:
        return max(self.reserved_inodes)

    @property
    def free_blocks_count(self) -> int:
        # blocks before s_first_data_block are not tracked by the bitmap
        return self.blocks_count - self.first_data_block - len(self.reserved_blocks)

    @property
    def free_inodes_count(self) -> int:
        return self.inodes_count - len(self.reserved_inodes)

    @property
    def directory_inodes(self) -> Tuple[int, ...]:
        return (EXT2_ROOT_INO, self.lost_found_ino)

    @property
    def used_dirs_count(self) -> int:
        return len(self.directory_inodes)

    @property
    def fast_symlink(self) -> bool:
        return self.symlink_block is None

    def block_offset(self, block: int) -> int:
        return block * self.block_size

def plan_layout(params: Ext2Params) -> Ext2Layout:
    """
    Assign blocks in image order:
    superblock, GDT, block bitmap, inode bitmap, inode table,
    root dir, lost+found dir, file data, slow symlink data.
    """
    bs = params.block_size
    # With 1 KiB blocks the superblock is block 1 and block 0 is boot space
    first_data_block = 1 if bs == 1024 else 0

    # Inode table is whole blocks: round the count up the way mke2fs does
    inodes_per_block = bs // INODE_SIZE
    inodes_count = div_ceil(params.inodes_count, inodes_per_block) * inodes_per_block
    if inodes_count != params.inodes_count:
        params = dataclasses.replace(params, inodes_count=inodes_count)
    inode_table_blocks = inodes_count // inodes_per_block

    if params.blocks_count - first_data_block > bs * 8:
        raise ValueError(
            f"{params.blocks_count} blocks do not fit one block group "
            f"(max {bs * 8 + first_data_block} with {bs}-byte blocks)"
        )
    if params.inodes_count > bs * 8:
        raise ValueError(f"{params.inodes_count} inodes do not fit one inode bitmap (max {bs * 8})")

    reservations: List[Reservation] = []
    next_block = first_data_block

    def take(purpose: str, count: int = 1) -> int:
        nonlocal next_block
        start = next_block
        for n in range(start, start + count):
            reservations.append(Reservation("block", n, purpose))
        next_block += count
        return start

    superblock_block = take("superblock")
    gdt_block = take("group descriptor table")
    block_bitmap_block = take("block bitmap")
    inode_bitmap_block = take("inode bitmap")
    inode_table_block = take("inode table", inode_table_blocks)
    root_dir_block = take("root directory")
    lost_found_dir_block = take("lost+found directory")

    file_nblocks = div_ceil(len(params.file_content), bs)
    if file_nblocks > EXT2_NDIR_BLOCKS:
        raise ValueError(
            f"File content of {len(params.file_content)} bytes needs {file_nblocks} blocks; "
            f"only {EXT2_NDIR_BLOCKS} direct blocks are supported"
        )
    file_blocks: Tuple[int, ...] = ()
    if file_nblocks:
        start = take("file data", file_nblocks)
        file_blocks = tuple(range(start, start + file_nblocks))

    target = params.symlink_target
    if not target:
        raise ValueError("Symlink target must not be empty")
    if len(target) > bs:
        raise ValueError(f"Symlink target of {len(target)} bytes does not fit one {bs}-byte block")
    symlink_block = None
    if len(target) > FAST_SYMLINK_MAX:
        symlink_block = take("symlink target")

    if next_block > params.blocks_count:
        raise ValueError(
            f"Image too small: layout needs {next_block} blocks, have {params.blocks_count}"
        )

    # Inodes 1..10 belong to the format; root is one of them
    for ino in range(1, EXT2_GOOD_OLD_FIRST_INO):
        purpose = {EXT2_BAD_INO: "bad blocks", EXT2_ROOT_INO: "root directory"}.get(ino, "reserved")
        reservations.append(Reservation("inode", ino, purpose))
    lost_found_ino = EXT2_GOOD_OLD_FIRST_INO
    file_ino = lost_found_ino + 1
    symlink_ino = file_ino + 1
    reservations.append(Reservation("inode", lost_found_ino, "lost+found directory"))
    reservations.append(Reservation("inode", file_ino, "regular file"))
    reservations.append(Reservation("inode", symlink_ino, "symlink"))

    if symlink_ino > params.inodes_count:
        raise ValueError(f"Need at least {symlink_ino} inodes, have {params.inodes_count}")

    for name in (params.lost_found_name, params.file_name, params.symlink_name):
        validate_name(name)
        if name in (b".", b".."):
            raise ValueError(f"'{name.decode()}' is reserved for directory self/parent entries")
    if len({params.lost_found_name, params.file_name, params.symlink_name}) != 3:
        raise ValueError("Directory entry names in / must be distinct")

    layout = Ext2Layout(
        params=params,
        first_data_block=first_data_block,
        superblock_block=superblock_block,
        gdt_block=gdt_block,
        block_bitmap_block=block_bitmap_block,
        inode_bitmap_block=inode_bitmap_block,
        inode_table_block=inode_table_block,
        inode_table_blocks=inode_table_blocks,
        root_dir_block=root_dir_block,
        lost_found_dir_block=lost_found_dir_block,
        file_blocks=file_blocks,
        symlink_block=symlink_block,
        lost_found_ino=lost_found_ino,
        file_ino=file_ino,
        symlink_ino=symlink_ino,
        reservations=tuple(reservations),
    )
    check_layout(layout)
    return layout

def check_layout(layout: Ext2Layout) -> None:
    seen = set()
    for r in layout.reservations:
        if (r.kind, r.number) in seen:
            raise ValueError(f"{r.kind} {r.number} reserved twice")
        seen.add((r.kind, r.number))
        if r.kind == "block" and not layout.first_data_block <= r.number < layout.blocks_count:
            raise ValueError(f"Block {r.number} ({r.purpose}) outside image")
        if r.kind == "inode" and not 1 <= r.number <= layout.inodes_count:
            raise ValueError(f"Inode {r.number} ({r.purpose}) outside inode table")

# -------------------------
# Bitmaps
# -------------------------

def make_bitmap(nbits: int, used: Iterable[int], size: int) -> bytes:
    """
    One bit per unit, 1 = allocated. Bits from nbits up to the end of
    the bitmap describe units that do not exist and are set as well.
    """
    if nbits > size * 8:
        raise ValueError(f"{nbits} bits do not fit a {size}-byte bitmap")
    bm = bytearray(size)
    for i in used:
        if not 0 <= i < nbits:
            raise ValueError(f"Bit {i} outside bitmap of {nbits} units")
        bm[i // 8] |= 1 << (i % 8)
    for i in range(nbits, size * 8):
        bm[i // 8] |= 1 << (i % 8)
    return bytes(bm)

def build_block_bitmap(layout: Ext2Layout) -> bytes:
    # bit 0 is s_first_data_block
    base = layout.first_data_block
    return make_bitmap(
        nbits=layout.blocks_count - base,
        used=(n - base for n in layout.reserved_blocks),
        size=layout.block_size,
    )

def build_inode_bitmap(layout: Ext2Layout) -> bytes:
    # bit 0 is inode 1
    return make_bitmap(
        nbits=layout.inodes_count,
        used=(n - 1 for n in layout.reserved_inodes),
        size=layout.block_size,
    )

# -------------------------
# Superblock and group descriptor
# -------------------------

@dataclass(frozen=True)
class Superblock:
    inodes_count: int
    blocks_count: int
    r_blocks_count: int = 0
    free_blocks_count: int = 0
    free_inodes_count: int = 0
    first_data_block: int = 1
    log_block_size: int = 0
    log_frag_size: int = 0
    blocks_per_group: int = 8192
    frags_per_group: int = 8192
    inodes_per_group: int = 0
    mtime: int = 0
    wtime: int = 0
    mnt_count: int = 0
    max_mnt_count: int = -1
    magic: int = EXT2_MAGIC
    state: int = EXT2_VALID_FS
    errors: int = EXT2_ERRORS_CONTINUE
    minor_rev_level: int = 0
    lastcheck: int = 0
    checkinterval: int = 0
    creator_os: int = EXT2_OS_LINUX
    rev_level: int = EXT2_GOOD_OLD_REV
    def_resuid: int = 0
    def_resgid: int = 0
    uuid: bytes = bytes(16)
    volume_name: bytes = bytes(16)

@dataclass(frozen=True)
class GroupDescriptor:
    block_bitmap: int
    inode_bitmap: int
    inode_table: int
    free_blocks_count: int
    free_inodes_count: int
    used_dirs_count: int

def superblock_from_layout(layout: Ext2Layout, now: int) -> Superblock:
    p = layout.params
    return Superblock(
        inodes_count=layout.inodes_count,
        blocks_count=layout.blocks_count,
        free_blocks_count=layout.free_blocks_count,
        free_inodes_count=layout.free_inodes_count,
        first_data_block=layout.first_data_block,
        log_block_size=layout.log_block_size,
        log_frag_size=layout.log_block_size,
        blocks_per_group=layout.blocks_per_group,
        frags_per_group=layout.blocks_per_group,
        inodes_per_group=layout.inodes_count,
        wtime=now,
        lastcheck=now,
        uuid=p.volume_uuid,
        volume_name=p.volume_name,
    )

def make_superblock(sb: Superblock) -> bytes:
    """
    Superblock, padded to its full 1024 bytes.
    Revision 0: no s_first_ino / s_inode_size, fixed 128-byte inodes.
    """
    packed = struct.pack(SUPERBLOCK_FORMAT, *dataclasses.astuple(sb))
    out = packed.ljust(SUPERBLOCK_SIZE, b"\x00")
    assert len(out) == SUPERBLOCK_SIZE
    return out

def group_descriptor_from_layout(layout: Ext2Layout) -> GroupDescriptor:
    return GroupDescriptor(
        block_bitmap=layout.block_bitmap_block,
        inode_bitmap=layout.inode_bitmap_block,
        inode_table=layout.inode_table_block,
        free_blocks_count=layout.free_blocks_count,
        free_inodes_count=layout.free_inodes_count,
        used_dirs_count=layout.used_dirs_count,
    )

def make_group_descriptor(gd: GroupDescriptor) -> bytes:
    out = struct.pack(GROUP_DESC_FORMAT, *dataclasses.astuple(gd))
    assert len(out) == GROUP_DESC_SIZE
    return out

def make_group_descriptor_table(layout: Ext2Layout) -> bytes:
    # single group: one descriptor, rest of the block zero
    gd = make_group_descriptor(group_descriptor_from_layout(layout))
    return gd.ljust(layout.block_size, b"\x00")

# -------------------------
# Inodes
# -------------------------

@dataclass(frozen=True)
class Inode:
    mode: int
    uid: int
    size: int
    atime: int
    ctime: int
    mtime: int
    dtime: int = 0
    gid: int = 0
    links_count: int = 1
    blocks: int = 0         # 512-byte sectors, not filesystem blocks
    flags: int = 0
    block: bytes = bytes(EXT2_N_BLOCKS * 4)

def make_inode(inode: Inode) -> bytes:
    if len(inode.block) != EXT2_N_BLOCKS * 4:
        raise ValueError(f"i_block must be {EXT2_N_BLOCKS * 4} bytes")
    packed = struct.pack(
        INODE_FORMAT,
        inode.mode,
        inode.uid,
        inode.size,
        inode.atime,
        inode.ctime,
        inode.mtime,
        inode.dtime,
        inode.gid,
        inode.links_count,
        inode.blocks,
        inode.flags,
        0,                  # i_reserved1 (osd1)
        inode.block,
    )
    out = packed.ljust(INODE_SIZE, b"\x00")
    assert len(out) == INODE_SIZE
    return out

def block_pointers(blocks: Sequence[int]) -> bytes:
    """i_block with the given direct pointers; indirect slots stay 0."""
    if len(blocks) > EXT2_NDIR_BLOCKS:
        raise ValueError(f"{len(blocks)} blocks exceed {EXT2_NDIR_BLOCKS} direct pointers")
    ptrs = list(blocks) + [0] * (EXT2_N_BLOCKS - len(blocks))
    return struct.pack(f"<{EXT2_N_BLOCKS}I", *ptrs)

def sectors_for(layout: Ext2Layout, nblocks: int) -> int:
    return nblocks * layout.block_size // SECTOR_SIZE

def directory_inode(layout: Ext2Layout, block: int, links: int, now: int) -> Inode:
    return Inode(
        mode=DIR_MODE,
        uid=0,
        gid=0,
        size=layout.block_size,
        atime=now,
        ctime=now,
        mtime=now,
        links_count=links,
        blocks=sectors_for(layout, 1),
        block=block_pointers([block]),
    )

def file_inode(layout: Ext2Layout, now: int) -> Inode:
    p = layout.params
    return Inode(
        mode=FILE_MODE,
        uid=p.uid,
        gid=p.gid,
        size=len(p.file_content),
        atime=now,
        ctime=now,
        mtime=now,
        links_count=1,
        blocks=sectors_for(layout, len(layout.file_blocks)),
        block=block_pointers(layout.file_blocks),
    )

def symlink_inode(layout: Ext2Layout, now: int) -> Inode:
    p = layout.params
    target = p.symlink_target
    if layout.fast_symlink:
        # target lives in i_block itself, no data block
        block = target.ljust(EXT2_N_BLOCKS * 4, b"\x00")
        nblocks = 0
    else:
        block = block_pointers([layout.symlink_block])
        nblocks = 1
    return Inode(
        mode=SYMLINK_MODE,
        uid=p.uid,
        gid=p.gid,
        size=len(target),
        atime=now,
        ctime=now,
        mtime=now,
        links_count=1,
        blocks=sectors_for(layout, nblocks),
        block=block,
    )

def make_inode_table(layout: Ext2Layout, now: int) -> Dict[int, Inode]:
    """Every live inode of the tree, keyed by inode number."""
    # root: ".", ".." and the ".." of each child directory
    child_dirs = len(layout.directory_inodes) - 1
    return {
        EXT2_ROOT_INO: directory_inode(layout, layout.root_dir_block, 2 + child_dirs, now),
        layout.lost_found_ino: directory_inode(layout, layout.lost_found_dir_block, 2, now),
        layout.file_ino: file_inode(layout, now),
        layout.symlink_ino: symlink_inode(layout, now),
    }

# -------------------------
# Directory blocks
# -------------------------

def dir_entry_rec_len(name_len: int) -> int:
    """
    8-byte header plus the name, rounded up to 4 bytes.
    A name that is already a multiple of 4 gets no extra padding.
    """
    if name_len % 4 != 0:
        return 12 + name_len // 4 * 4
    return 8 + name_len

def make_dir_entry(inode: int, name: bytes, rec_len: Optional[int] = None) -> bytes:
    if inode:
        validate_name(name)
    if rec_len is None:
        rec_len = dir_entry_rec_len(len(name))
    if rec_len % 4 != 0 or rec_len < DIR_ENTRY_HEADER_SIZE + len(name):
        raise ValueError(f"Bad rec_len {rec_len} for name of {len(name)} bytes")
    entry = bytearray(rec_len)
    struct.pack_into(DIR_ENTRY_FORMAT, entry, 0, inode, rec_len, len(name))
    entry[DIR_ENTRY_HEADER_SIZE:DIR_ENTRY_HEADER_SIZE + len(name)] = name
    return bytes(entry)

def make_dir_block(entries: Sequence[Tuple[int, bytes]], block_size: int) -> bytes:
    """
    Pack (inode, name) entries into one directory block.

    Entries are written in the given order. The space left after them
    goes to an unused (inode 0) entry so the rec_len chain ends exactly
    at the block boundary. When that space is too small for an entry
    header it is added to the last real entry instead.
    """
    lengths = [dir_entry_rec_len(len(name)) for _, name in entries]
    used = sum(lengths)
    if used > block_size:
        raise ValueError(
            f"Directory entries need {used} bytes, more than one {block_size}-byte block"
        )
    remaining = block_size - used
    if 0 < remaining < DIR_ENTRY_HEADER_SIZE and lengths:
        lengths[-1] += remaining
        remaining = 0

    buf = bytearray()
    for (ino, name), rec_len in zip(entries, lengths):
        buf += make_dir_entry(ino, name, rec_len)
    if remaining:
        buf += make_dir_entry(0, b"", remaining)
    assert len(buf) == block_size
    return bytes(buf)

def root_dir_entries(layout: Ext2Layout) -> List[Tuple[int, bytes]]:
    p = layout.params
    return [
        (EXT2_ROOT_INO, b"."),
        (EXT2_ROOT_INO, b".."),     # parent of root is root
        (layout.lost_found_ino, p.lost_found_name),
        (layout.file_ino, p.file_name),
        (layout.symlink_ino, p.symlink_name),
    ]

def lost_found_dir_entries(layout: Ext2Layout) -> List[Tuple[int, bytes]]:
    return [
        (layout.lost_found_ino, b"."),
        (EXT2_ROOT_INO, b".."),
    ]

# -------------------------
# Image writer
# -------------------------

def write_at(f, offset: int, data: bytes) -> None:
    f.seek(offset)
    written = f.write(data)
    if written is not None and written != len(data):
        raise OSError(errno.EIO, f"Short write at offset {offset}: {written} of {len(data)} bytes")

def write_inode(f, layout: Ext2Layout, number: int, record: Inode) -> None:
    if not 1 <= number <= layout.inodes_count:
        raise ValueError(f"Inode {number} outside 1..{layout.inodes_count}")
    offset = layout.block_offset(layout.inode_table_block) + (number - 1) * INODE_SIZE
    write_at(f, offset, make_inode(record))

def write_image(f, layout: Ext2Layout, now: int) -> None:
    """Write every structure at its planned offset into an open file."""
    p = layout.params

    # Resize first; all later writes land inside this extent
    f.truncate(layout.image_size)

    write_at(f, SUPERBLOCK_OFFSET, make_superblock(superblock_from_layout(layout, now)))
    write_at(f, layout.block_offset(layout.gdt_block), make_group_descriptor_table(layout))

    write_at(f, layout.block_offset(layout.block_bitmap_block), build_block_bitmap(layout))
    write_at(f, layout.block_offset(layout.inode_bitmap_block), build_inode_bitmap(layout))

    for number, inode in sorted(make_inode_table(layout, now).items()):
        write_inode(f, layout, number, inode)

    write_at(f, layout.block_offset(layout.root_dir_block),
             make_dir_block(root_dir_entries(layout), layout.block_size))
    write_at(f, layout.block_offset(layout.lost_found_dir_block),
             make_dir_block(lost_found_dir_entries(layout), layout.block_size))

    # file blocks are contiguous; the tail of the last one stays zero
    if layout.file_blocks:
        write_at(f, layout.block_offset(layout.file_blocks[0]), p.file_content)

    if not layout.fast_symlink:
        write_at(f, layout.block_offset(layout.symlink_block), p.symlink_target)

# -------------------------
# Main build
# -------------------------

def build_params(args) -> Ext2Params:
    block_size = args.block_size
    if block_size not in BLOCK_SIZES:
        raise ValueError(f"block size must be one of {'/'.join(map(str, BLOCK_SIZES))}")

    if args.size is not None:
        size_bytes = parse_size(args.size)
        if size_bytes % block_size != 0:
            raise ValueError("Image size must be multiple of block size")
        blocks_count = size_bytes // block_size
    else:
        blocks_count = args.blocks
    if blocks_count <= 0:
        raise ValueError("Block count must be positive")
    if args.inodes <= 0:
        raise ValueError("Inode count must be positive")

    for name, value in (("uid", args.uid), ("gid", args.gid)):
        if not 0 <= value <= 0xFFFF:
            raise ValueError(f"{name} must fit 16 bits: {value}")
    if args.timestamp is not None and not 0 <= args.timestamp <= 0xFFFFFFFF:
        raise ValueError(f"timestamp must fit 32 bits: {args.timestamp}")

    file_name = args.file_name.encode("utf-8")
    link_target = args.link_target if args.link_target is not None else args.file_name

    return Ext2Params(
        output=args.output,
        block_size=block_size,
        blocks_count=blocks_count,
        inodes_count=args.inodes,
        volume_name=clamp_label(args.label),
        volume_uuid=args.uuid.bytes,
        uid=args.uid,
        gid=args.gid,
        timestamp=args.timestamp,
        file_name=file_name,
        file_content=args.content.encode("utf-8"),
        symlink_name=args.link_name.encode("utf-8"),
        symlink_target=link_target.encode("utf-8"),
    )

def make_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Generate ext2 reference image.")
    ap.add_argument("--output", default=os.environ.get("IMG", DEFAULT_OUTPUT), help=f"Path to output image file (default: {DEFAULT_OUTPUT})")
    ap.add_argument("--block-size", type=int, default=1024, help="Bytes per block: 1024, 2048 or 4096 (default: 1024)")
    ap.add_argument("--blocks", type=int, default=1024, help="Total blocks (default: 1024)")
    ap.add_argument("--size", default=None, help="Image size (e.g. 1MiB, 4MB, or bytes); overrides --blocks")
    ap.add_argument("--inodes", type=int, default=128, help="Total inodes, rounded up to whole inode-table blocks (default: 128)")
    ap.add_argument("--label", default=DEFAULT_VOLUME_NAME, help=f"Volume name (<= 16 chars, default: '{DEFAULT_VOLUME_NAME}')")
    ap.add_argument("--uuid", type=uuid.UUID, default=DEFAULT_UUID, help="Filesystem UUID")
    ap.add_argument("--uid", type=int, default=1000, help="Owner of the file and symlink (default: 1000)")
    ap.add_argument("--gid", type=int, default=1000, help="Group of the file and symlink (default: 1000)")
    ap.add_argument("--timestamp", type=int, default=os.environ.get("SOURCE_DATE_EPOCH"), help="Unix time for every timestamp (default: $SOURCE_DATE_EPOCH or now)")
    ap.add_argument("--file-name", default="hello-world", help="Name of the regular file (default: hello-world)")
    ap.add_argument("--content", default="Hello world\n", help="Regular file content")
    ap.add_argument("--link-name", default="hello", help="Name of the symlink (default: hello)")
    ap.add_argument("--link-target", default=None, help="Symlink target (default: the regular file's name)")

    return ap

def main(argv=None) -> int:
    args = make_parser().parse_args(argv)

    try:
        params = build_params(args)
        layout = plan_layout(params)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    # one clock read for the whole image
    now = params.timestamp if params.timestamp is not None else current_time()

    # Create/truncate file
    try:
        with open(params.output, "wb") as f:
            write_image(f, layout, now)
    except OSError as e:
        print(f"ERROR: {params.output}: {e.strerror or e}", file=sys.stderr)
        return 1

    label = params.volume_name.rstrip(b"\x00").decode("ascii", errors="replace")
    symlink_kind = "fast" if layout.fast_symlink else f"block {layout.symlink_block}"
    file_blocks = ", ".join(map(str, layout.file_blocks)) or "none"
    sys.stdout.write(
        "Created ext2 image:\n"
        f"  file: {params.output}\n"
        f"  size: {layout.image_size} bytes\n"
        f"  block: {layout.block_size} bytes\n"
        f"  blocks: {layout.blocks_count} ({layout.free_blocks_count} free)\n"
        f"  inodes: {layout.inodes_count} ({layout.free_inodes_count} free)\n"
        f"  first data block: {layout.first_data_block}\n"
        f"  block bitmap: {layout.block_bitmap_block}\n"
        f"  inode bitmap: {layout.inode_bitmap_block}\n"
        f"  inode table: {layout.inode_table_block} ({layout.inode_table_blocks} blocks)\n"
        f"  root dir: block {layout.root_dir_block}\n"
        f"  {params.lost_found_name.decode('utf-8', errors='replace')}: inode {layout.lost_found_ino}, block {layout.lost_found_dir_block}\n"
        f"  {params.file_name.decode('utf-8', errors='replace')}: inode {layout.file_ino}, blocks {file_blocks}\n"
        f"  {params.symlink_name.decode('utf-8', errors='replace')}: inode {layout.symlink_ino}, {symlink_kind}\n"
        f"  label: {label}\n"
    )
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
