#!/usr/bin/env python
"""
Index builder tests for replican.py
===================================

Block layout, Dir/File/Block tree shape, parent links, deterministic
directory checksums and the entries the builder skips.
"""

import hashlib
import os
import stat
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from replican import (  # noqa: E402
    BLOCKSIZE,
    RELOC_PREFIX,
    ChecksumType,
    Dir,
    File,
    IndexBuilder,
    IndexingError,
    FileIOError,
    NodeKind,
    dir_checksum,
    dir_listing,
    index_dir,
    index_file,
    index_path,
    node_rel_path,
    strong_checksum,
    walk_nodes,
    weak_checksum,
)


def write_file(path, data):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


def make_tree(base, files):
    for relpath, data in files.items():
        write_file(os.path.join(base, relpath), data)


SAMPLE_TREE = {
    "readme.txt": b"hello replican\n",
    "docs/guide.md": b"# Guide\n" * 3000,
    "docs/api/index.html": b"<html></html>",
    "src/main.py": b"print('hi')\n",
    "src/util.py": b"",
}


class TestIndexFile(unittest.TestCase):
    """Single-file indexing"""

    def test_block_layout(self):
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "data.bin")
            data = os.urandom(10000)
            write_file(path, data)

            file = index_file(path)

            self.assertEqual(file.name, "data.bin")
            self.assertEqual(file.size, 10000)
            self.assertEqual(file.strong, hashlib.sha1(data).digest())
            self.assertEqual(len(file.blocks), 2)

            first, second = file.blocks
            self.assertEqual((first.position, first.offset, first.length), (0, 0, BLOCKSIZE))
            self.assertEqual((second.position, second.offset, second.length), (1, BLOCKSIZE, 1808))
            self.assertEqual(first.strong, hashlib.sha1(data[:BLOCKSIZE]).digest())
            self.assertEqual(second.strong, hashlib.sha1(data[BLOCKSIZE:]).digest())
            self.assertEqual(first.weak, weak_checksum(data[:BLOCKSIZE]))
            self.assertEqual(second.weak, weak_checksum(data[BLOCKSIZE:]))

            for block in file.blocks:
                self.assertIs(block.file, file)
                self.assertIs(block.parent, file)
            self.assertIsNone(file.parent)

    def test_empty_file(self):
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "empty")
            write_file(path, b"")
            file = index_file(path)
            self.assertEqual(file.size, 0)
            self.assertEqual(file.blocks, [])
            self.assertEqual(file.strong, hashlib.sha1(b"").digest())

    def test_exact_multiple_of_blocksize(self):
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "two-blocks")
            write_file(path, b"x" * (BLOCKSIZE * 2))
            file = index_file(path)
            self.assertEqual([b.length for b in file.blocks], [BLOCKSIZE, BLOCKSIZE])
            # identical content, identical block checksums
            self.assertEqual(file.blocks[0].strong, file.blocks[1].strong)

    def test_mode_recorded(self):
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "script.sh")
            write_file(path, b"#!/bin/sh\n")
            os.chmod(path, 0o750)
            file = index_file(path)
            self.assertEqual(file.mode, stat.S_IMODE(os.stat(path).st_mode))

    def test_alternate_checksum_type(self):
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "f")
            write_file(path, b"abc")
            file = index_file(path, ChecksumType.SHA256)
            self.assertEqual(file.strong, hashlib.sha256(b"abc").digest())
            self.assertEqual(file.blocks[0].strong, hashlib.sha256(b"abc").digest())

    def test_index_file_rejects_directory(self):
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(IndexingError):
                index_file(td)


class TestIndexDir(unittest.TestCase):
    """Directory indexing"""

    def test_tree_shape(self):
        with tempfile.TemporaryDirectory() as td:
            make_tree(td, SAMPLE_TREE)
            root = index_dir(td)

            self.assertEqual(root.kind, NodeKind.DIR)
            self.assertEqual(list(root.subdirs), ["docs", "src"])
            self.assertEqual(list(root.files), ["readme.txt"])
            self.assertEqual(list(root.subdirs["docs"].subdirs), ["api"])
            self.assertEqual(list(root.subdirs["src"].files), ["main.py", "util.py"])

            # sub-Dirs come before Files
            self.assertEqual([c.kind for c in root.children()],
                             [NodeKind.DIR, NodeKind.DIR, NodeKind.FILE])

            guide = root.subdirs["docs"].files["guide.md"]
            self.assertEqual(guide.size, len(SAMPLE_TREE["docs/guide.md"]))
            self.assertEqual(len(guide.blocks), 3)

    def test_parent_links(self):
        with tempfile.TemporaryDirectory() as td:
            make_tree(td, SAMPLE_TREE)
            root = index_dir(td)

            self.assertIsNone(root.parent)
            for node in walk_nodes(root):
                for child in node.children():
                    self.assertIs(child.parent, node)
                if node.kind == NodeKind.FILE:
                    for block in node.blocks:
                        self.assertIs(block.parent, node)

    def test_node_rel_path(self):
        with tempfile.TemporaryDirectory() as td:
            make_tree(td, SAMPLE_TREE)
            root = index_dir(td)

            index_html = root.subdirs["docs"].subdirs["api"].files["index.html"]
            self.assertEqual(node_rel_path(index_html), os.path.join("docs", "api", "index.html"))
            self.assertEqual(node_rel_path(index_html.blocks[0]),
                             os.path.join("docs", "api", "index.html"))
            self.assertEqual(node_rel_path(root.files["readme.txt"]), "readme.txt")
            self.assertEqual(node_rel_path(root), "")

    def test_dir_checksum_over_sorted_listing(self):
        with tempfile.TemporaryDirectory() as td:
            make_tree(td, SAMPLE_TREE)
            root = index_dir(td)

            src = root.subdirs["src"]
            expected_listing = (
                f"main.py\tf\t{src.files['main.py'].strong.hex()}\n"
                f"util.py\tf\t{src.files['util.py'].strong.hex()}\n"
            ).encode()
            self.assertEqual(dir_listing(src), expected_listing)
            self.assertEqual(src.strong, hashlib.sha1(expected_listing).digest())

            for node in walk_nodes(root):
                if node.kind == NodeKind.DIR:
                    self.assertEqual(node.strong, dir_checksum(node))

    def test_identical_trees_hash_equal(self):
        """Same content built in different creation orders gives the same root checksum"""
        with tempfile.TemporaryDirectory() as td1, tempfile.TemporaryDirectory() as td2:
            make_tree(td1, SAMPLE_TREE)
            make_tree(td2, dict(reversed(list(SAMPLE_TREE.items()))))

            self.assertEqual(index_dir(td1).strong, index_dir(td2).strong)

    def test_deterministic_across_builds(self):
        with tempfile.TemporaryDirectory() as td:
            make_tree(td, SAMPLE_TREE)
            self.assertEqual(index_dir(td).strong, index_dir(td).strong)

    def test_content_change_propagates_to_root(self):
        with tempfile.TemporaryDirectory() as td:
            make_tree(td, SAMPLE_TREE)
            before = index_dir(td)
            write_file(os.path.join(td, "docs", "api", "index.html"), b"<html>changed</html>")
            after = index_dir(td)

            self.assertNotEqual(before.strong, after.strong)
            self.assertNotEqual(before.subdirs["docs"].strong, after.subdirs["docs"].strong)
            self.assertEqual(before.subdirs["src"].strong, after.subdirs["src"].strong)

    def test_rename_changes_dir_checksum(self):
        with tempfile.TemporaryDirectory() as td:
            write_file(os.path.join(td, "a.txt"), b"same")
            before = index_dir(td).strong
            os.rename(os.path.join(td, "a.txt"), os.path.join(td, "b.txt"))
            self.assertNotEqual(index_dir(td).strong, before)

    def test_dir_checksum_ignores_insertion_order(self):
        files = {name: File(name=name, strong=strong_checksum(name.encode()))
                 for name in ("zeta.txt", "alpha.txt", "mid.txt")}
        subdirs = {name: Dir(name=name, strong=strong_checksum(name.encode() * 2))
                   for name in ("b", "a")}

        forward = Dir(name="x", subdirs=dict(subdirs), files=dict(files))
        backward = Dir(name="x",
                       subdirs=dict(reversed(list(subdirs.items()))),
                       files=dict(reversed(list(files.items()))))

        self.assertEqual(dir_listing(forward), dir_listing(backward))
        self.assertEqual(dir_checksum(forward), dir_checksum(backward))

    def test_names_cannot_forge_listing_lines(self):
        s1, s2 = strong_checksum(b"one"), strong_checksum(b"two")
        honest = Dir(files={"a": File(name="a", strong=s1), "b": File(name="b", strong=s2)})
        forged_name = f"a\tf\t{s1.hex()}\nb"
        forged = Dir(files={forged_name: File(name=forged_name, strong=s2)})

        self.assertNotEqual(dir_listing(honest), dir_listing(forged))
        self.assertNotEqual(dir_checksum(honest), dir_checksum(forged))
        self.assertEqual(dir_listing(forged).count(b"\n"), 1)

    def test_empty_dir(self):
        with tempfile.TemporaryDirectory() as td:
            os.mkdir(os.path.join(td, "empty"))
            root = index_dir(td)
            empty = root.subdirs["empty"]
            self.assertEqual(empty.children(), [])
            self.assertEqual(empty.strong, hashlib.sha1(b"").digest())

    def test_relocated_entries_skipped(self):
        with tempfile.TemporaryDirectory() as td:
            make_tree(td, {"keep.txt": b"keep", RELOC_PREFIX + "abc123": b"moved aside",
                           RELOC_PREFIX + "dir/inner.txt": b"inner"})
            builder = IndexBuilder()
            root = builder.build_dir(td)
            self.assertEqual(list(root.files), ["keep.txt"])
            self.assertEqual(root.subdirs, {})
            self.assertEqual(builder.last_stats.skipped, 2)

    @unittest.skipUnless(hasattr(os, "symlink"), "os.symlink not available")
    def test_symlinks_skipped_by_default(self):
        with tempfile.TemporaryDirectory() as td:
            write_file(os.path.join(td, "target.txt"), b"target")
            os.symlink(os.path.join(td, "target.txt"), os.path.join(td, "link.txt"))
            root = index_dir(td)
            self.assertEqual(list(root.files), ["target.txt"])

    @unittest.skipUnless(hasattr(os, "symlink"), "os.symlink not available")
    def test_follow_symlinks(self):
        with tempfile.TemporaryDirectory() as td:
            write_file(os.path.join(td, "target.txt"), b"target")
            os.symlink(os.path.join(td, "target.txt"), os.path.join(td, "link.txt"))
            root = IndexBuilder(follow_symlinks=True).build_dir(td)
            self.assertEqual(list(root.files), ["link.txt", "target.txt"])
            self.assertEqual(root.files["link.txt"].strong, root.files["target.txt"].strong)

    @unittest.skipUnless(hasattr(os, "mkfifo"), "os.mkfifo not available")
    def test_special_files_skipped(self):
        with tempfile.TemporaryDirectory() as td:
            write_file(os.path.join(td, "regular"), b"r")
            os.mkfifo(os.path.join(td, "pipe"))
            root = index_dir(td)
            self.assertEqual(list(root.files), ["regular"])

    def test_stats(self):
        with tempfile.TemporaryDirectory() as td:
            make_tree(td, SAMPLE_TREE)
            builder = IndexBuilder()
            builder.build(td)
            stats = builder.last_stats
            self.assertEqual(stats.dirs, 4)
            self.assertEqual(stats.files, 5)
            self.assertEqual(stats.bytes_indexed, sum(len(d) for d in SAMPLE_TREE.values()))
            self.assertEqual(stats.blocks, 1 + 3 + 1 + 1 + 0)
            self.assertGreaterEqual(stats.elapsed, 0.0)


class TestIndexPath(unittest.TestCase):
    """Root kind selection and failures"""

    def test_selects_root_kind(self):
        with tempfile.TemporaryDirectory() as td:
            write_file(os.path.join(td, "f.txt"), b"data")
            self.assertIsInstance(index_path(td), Dir)
            self.assertIsInstance(index_path(os.path.join(td, "f.txt")), File)

    def test_missing_root(self):
        with tempfile.TemporaryDirectory() as td:
            missing = os.path.join(td, "nope")
            with self.assertRaises(IndexingError) as ctx:
                index_path(missing)
            self.assertEqual(ctx.exception.path, missing)
            self.assertIsInstance(ctx.exception, FileIOError)
            self.assertIsInstance(ctx.exception.__cause__, OSError)

    @unittest.skipIf(not hasattr(os, "geteuid") or os.geteuid() == 0,
                     "permission checks do not apply to root")
    def test_unreadable_file_aborts(self):
        with tempfile.TemporaryDirectory() as td:
            locked = os.path.join(td, "locked.txt")
            write_file(locked, b"secret")
            os.chmod(locked, 0)
            try:
                with self.assertRaises(IndexingError) as ctx:
                    index_dir(td)
                self.assertEqual(ctx.exception.path, locked)
            finally:
                os.chmod(locked, 0o600)


if __name__ == '__main__':
    unittest.main()
