import os
import stat
import tempfile
import unittest

from ext2_builder import (
    EXT2_ROOT_INO,
    INODE_SIZE,
    build_params,
    make_inode,
    make_inode_table,
    make_parser,
    plan_layout,
    write_inode,
)
from ext2_reader import inode_block_pointers, parse_inode

NOW = 1700000000

def layout_for(*extra):
    return plan_layout(build_params(make_parser().parse_args(["--output", "unused.img", *extra])))

class TestInodeTable(unittest.TestCase):

    def setUp(self):
        self.layout = layout_for()
        self.table = make_inode_table(self.layout, NOW)

    def test_inode_numbers(self):
        self.assertEqual(sorted(self.table), [2, 11, 12, 13])

    def test_root(self):
        root = self.table[EXT2_ROOT_INO]
        self.assertEqual(root.mode, stat.S_IFDIR | 0o755)
        self.assertEqual((root.uid, root.gid), (0, 0))
        self.assertEqual(root.size, 1024)
        self.assertEqual(root.links_count, 3)
        self.assertEqual(root.blocks, 2)
        self.assertEqual(inode_block_pointers(root), (21,) + (0,) * 14)

    def test_lost_found(self):
        lf = self.table[11]
        self.assertEqual(lf.mode, stat.S_IFDIR | 0o755)
        self.assertEqual(lf.links_count, 2)
        self.assertEqual(inode_block_pointers(lf)[0], 22)

    def test_regular_file(self):
        f = self.table[12]
        self.assertEqual(f.mode, stat.S_IFREG | 0o644)
        self.assertEqual((f.uid, f.gid), (1000, 1000))
        self.assertEqual(f.size, 12)
        self.assertEqual(f.links_count, 1)
        self.assertEqual(f.blocks, 2)
        self.assertEqual(inode_block_pointers(f)[0], 23)

    def test_fast_symlink(self):
        link = self.table[13]
        self.assertEqual(link.mode, stat.S_IFLNK | 0o644)
        self.assertEqual(link.size, 11)
        self.assertEqual(link.blocks, 0)
        self.assertEqual(link.block, b"hello-world" + bytes(49))

    def test_timestamps(self):
        for inode in self.table.values():
            self.assertEqual((inode.atime, inode.ctime, inode.mtime, inode.dtime), (NOW, NOW, NOW, 0))

class TestGeneralizedInodes(unittest.TestCase):

    def test_slow_symlink(self):
        target = "/very/long/target/" + "x" * 60
        layout = layout_for("--link-target", target)
        link = make_inode_table(layout, NOW)[layout.symlink_ino]
        self.assertEqual(link.size, len(target))
        self.assertEqual(link.blocks, 2)
        self.assertEqual(inode_block_pointers(link)[0], layout.symlink_block)

    def test_multi_block_file_on_4k(self):
        layout = layout_for("--block-size", "4096", "--blocks", "256", "--content", "z" * 10000)
        f = make_inode_table(layout, NOW)[layout.file_ino]
        self.assertEqual(f.size, 10000)
        self.assertEqual(f.blocks, 3 * 8)
        self.assertEqual(inode_block_pointers(f)[:4], layout.file_blocks + (0,))

    def test_owner(self):
        layout = layout_for("--uid", "0", "--gid", "50")
        table = make_inode_table(layout, NOW)
        self.assertEqual((table[12].uid, table[12].gid), (0, 50))
        self.assertEqual((table[13].uid, table[13].gid), (0, 50))

    def test_block_pointers_inside_image(self):
        layout = layout_for("--content", "q" * 4000, "--link-target", "l" * 100)
        for inode in make_inode_table(layout, NOW).values():
            if inode.blocks == 0:
                continue
            for ptr in inode_block_pointers(inode):
                if ptr:
                    self.assertLess(ptr, layout.blocks_count)
                    self.assertGreaterEqual(ptr, layout.first_data_block)

class TestWriteInode(unittest.TestCase):

    def test_offset_in_table(self):
        layout = layout_for()
        record = make_inode_table(layout, NOW)[12]
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "inode.img")
            with open(path, "wb") as f:
                f.truncate(layout.image_size)
                write_inode(f, layout, 12, record)
            with open(path, "rb") as f:
                data = f.read()
        # inode 12 lives in block 6 at offset 384
        offset = 6 * 1024 + 384
        self.assertEqual(data[offset:offset + INODE_SIZE], make_inode(record))
        self.assertEqual(parse_inode(data[offset:offset + INODE_SIZE]), record)
        self.assertEqual(data[:offset], bytes(offset))

    def test_number_out_of_range(self):
        layout = layout_for()
        record = make_inode_table(layout, NOW)[12]
        with tempfile.TemporaryFile() as f:
            with self.assertRaises(ValueError):
                write_inode(f, layout, 0, record)
            with self.assertRaises(ValueError):
                write_inode(f, layout, 129, record)

if __name__ == "__main__":
    unittest.main()
