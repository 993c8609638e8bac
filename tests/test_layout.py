import unittest

from ext2_builder import (
    EXT2_ROOT_INO,
    build_inode_bitmap,
    build_params,
    make_parser,
    plan_layout,
)

def params_for(*extra):
    return build_params(make_parser().parse_args(["--output", "unused.img", *extra]))

class TestDefaultLayout(unittest.TestCase):

    def setUp(self):
        self.layout = plan_layout(params_for())

    def test_block_numbers(self):
        layout = self.layout
        self.assertEqual(layout.first_data_block, 1)
        self.assertEqual(layout.superblock_block, 1)
        self.assertEqual(layout.gdt_block, 2)
        self.assertEqual(layout.block_bitmap_block, 3)
        self.assertEqual(layout.inode_bitmap_block, 4)
        self.assertEqual(layout.inode_table_block, 5)
        self.assertEqual(layout.inode_table_blocks, 16)
        self.assertEqual(layout.root_dir_block, 21)
        self.assertEqual(layout.lost_found_dir_block, 22)
        self.assertEqual(layout.file_blocks, (23,))
        self.assertIsNone(layout.symlink_block)
        self.assertTrue(layout.fast_symlink)

    def test_inode_numbers(self):
        self.assertEqual(self.layout.lost_found_ino, 11)
        self.assertEqual(self.layout.file_ino, 12)
        self.assertEqual(self.layout.symlink_ino, 13)
        self.assertEqual(self.layout.directory_inodes, (EXT2_ROOT_INO, 11))

    def test_free_counts(self):
        layout = self.layout
        self.assertEqual(layout.last_block, 23)
        self.assertEqual(layout.last_ino, 13)
        self.assertEqual(layout.free_blocks_count, layout.blocks_count - (layout.last_block + 1))
        self.assertEqual(layout.free_blocks_count, 1000)
        self.assertEqual(layout.free_inodes_count, layout.inodes_count - layout.last_ino)
        self.assertEqual(layout.free_inodes_count, 115)
        self.assertEqual(layout.used_dirs_count, 2)

    def test_reservation_table(self):
        blocks = self.layout.reserved_blocks
        inodes = self.layout.reserved_inodes
        self.assertEqual(sorted(blocks), list(range(1, 24)))
        self.assertEqual(sorted(inodes), list(range(1, 14)))
        purposes = {(r.kind, r.number): r.purpose for r in self.layout.reservations}
        self.assertEqual(purposes[("block", 21)], "root directory")
        self.assertEqual(purposes[("inode", 2)], "root directory")
        self.assertEqual(purposes[("inode", 13)], "symlink")

    def test_image_size(self):
        self.assertEqual(self.layout.image_size, 1024 * 1024)

class TestGeneralizedLayout(unittest.TestCase):

    def test_larger_image(self):
        layout = plan_layout(params_for("--blocks", "4096", "--inodes", "512"))
        self.assertEqual(layout.inode_table_blocks, 64)
        self.assertEqual(layout.root_dir_block, 5 + 64)
        self.assertEqual(layout.free_blocks_count, 4096 - (layout.last_block + 1))
        self.assertEqual(layout.free_inodes_count, 512 - 13)

    def test_4k_blocks_start_at_zero(self):
        layout = plan_layout(params_for("--block-size", "4096", "--size", "8MiB"))
        self.assertEqual(layout.blocks_count, 2048)
        self.assertEqual(layout.first_data_block, 0)
        self.assertEqual(layout.superblock_block, 0)
        self.assertEqual(layout.gdt_block, 1)
        self.assertEqual(layout.log_block_size, 2)
        self.assertEqual(layout.inode_table_blocks, 4)
        self.assertEqual(layout.free_blocks_count, 2048 - (layout.last_block + 1))

    def test_inode_count_rounded_to_table_blocks(self):
        cases = [
            ((), 13, 16),
            ((), 20, 24),
            (("--block-size", "4096"), 24, 32),
            (("--block-size", "2048"), 129, 144),
        ]
        for extra, requested, expected in cases:
            layout = plan_layout(params_for(*extra, "--inodes", str(requested)))
            per_block = layout.block_size // 128
            self.assertEqual(layout.inodes_count, expected, f"{requested} inodes")
            self.assertEqual(layout.inodes_count % 8, 0)
            self.assertGreaterEqual(layout.inodes_count, per_block)
            self.assertEqual(layout.inode_table_blocks * per_block, layout.inodes_count)
            self.assertEqual(layout.free_inodes_count, expected - 13)

    def test_rounded_inode_bitmap_padding(self):
        layout = plan_layout(params_for("--inodes", "13"))
        bm = build_inode_bitmap(layout)
        # inodes 1..13 used, 14..16 free, padding from bit 16
        self.assertEqual(bm[:2], b"\xff\x1f")
        self.assertEqual(bm[2:], b"\xff" * (1024 - 2))

    def test_multi_block_file(self):
        layout = plan_layout(params_for("--content", "x" * 3000))
        self.assertEqual(layout.file_blocks, (23, 24, 25))

    def test_empty_file_has_no_blocks(self):
        layout = plan_layout(params_for("--content", ""))
        self.assertEqual(layout.file_blocks, ())
        self.assertEqual(layout.last_block, 22)

    def test_slow_symlink_gets_block(self):
        layout = plan_layout(params_for("--link-target", "t" * 60))
        self.assertFalse(layout.fast_symlink)
        self.assertEqual(layout.symlink_block, 24)

    def test_59_byte_target_is_fast(self):
        layout = plan_layout(params_for("--link-target", "t" * 59))
        self.assertTrue(layout.fast_symlink)

class TestLayoutErrors(unittest.TestCase):

    def assertRejected(self, *extra):
        with self.assertRaises(ValueError):
            plan_layout(params_for(*extra))

    def test_file_beyond_direct_blocks(self):
        self.assertRejected("--content", "x" * (12 * 1024 + 1))

    def test_image_too_small(self):
        self.assertRejected("--blocks", "22")

    def test_more_than_one_group(self):
        self.assertRejected("--blocks", "8194")

    def test_too_few_inodes(self):
        self.assertRejected("--inodes", "8")

    def test_symlink_target_longer_than_block(self):
        self.assertRejected("--link-target", "t" * 1025)

    def test_bad_names(self):
        self.assertRejected("--file-name", "a/b")
        self.assertRejected("--link-name", "..")
        self.assertRejected("--link-name", "hello-world")
        self.assertRejected("--file-name", "n" * 256)

    def test_bad_params(self):
        with self.assertRaises(ValueError):
            params_for("--block-size", "512")
        with self.assertRaises(ValueError):
            params_for("--block-size", "1024", "--size", "1000")
        with self.assertRaises(ValueError):
            params_for("--uid", "70000")
        with self.assertRaises(ValueError):
            params_for("--timestamp", "-1")

if __name__ == "__main__":
    unittest.main()
