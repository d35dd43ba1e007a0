"""
Tests for the MFS engine: insert/retrieve, delete/undelete, attributes,
cipher, hex dump reads and image persistence.
"""
import os
import tempfile
import threading
import unittest

import pytest

from allocator import LinearScanAllocator
from fsconfig import FSConfig
from fserrors import (
    AlreadyExists, Ambiguous, Cancelled, DestinationError, Exhausted,
    ImageFormatError, InsufficientSpace, InvalidArgument, MFSError,
    NameTooLong, NotFound, NotOpen, ReadOnly, SourceNotFound, TooLarge,
    UndeleteConflict,
)
from fslayout import NO_INODE
from mfs import MFS, format_image, open_image

SMALL = FSConfig(block_size=256, num_blocks=2048, num_files=32,
                 blocks_per_file=64)
# 42 data blocks (10752 bytes), still 16 KiB files.
TINY = SMALL.with_overrides(num_blocks=120)

BS = SMALL.block_size
MAX_FILE = SMALL.max_file_size


class _FailAfter(LinearScanAllocator):
    """Hands out *limit* blocks, then reports exhaustion."""
    limit = None

    def find_free_block(self):
        if self.limit is not None:
            if self.limit == 0:
                raise Exhausted("block")
            self.limit -= 1
        return super().find_free_block()


class _CancelOnAllocate(LinearScanAllocator):
    """Sets *event* after every block it hands out."""
    event = None

    def find_free_block(self):
        block = super().find_free_block()
        if self.event is not None:
            self.event.set()
        return block


class _FreshSlotAllocator(LinearScanAllocator):
    """Prefers directory slots that never held a file."""

    def find_free_directory_slot(self):
        for slot, entry in self.meta.entries():
            if not entry.in_use and entry.inode == NO_INODE:
                return slot
        return super().find_free_directory_slot()


class MFSTestCase(unittest.TestCase):
    config = SMALL
    allocator_cls = LinearScanAllocator

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp = tmp.name
        self.fs = MFS(self.config, allocator_cls=self.allocator_cls)
        self.fs.format()

    def host(self, name, data):
        path = os.path.join(self.tmp, name)
        with open(path, "wb") as f:
            f.write(data)
        return path

    def put(self, name, data):
        return self.fs.insert(self.host(name, data))

    def content(self, name):
        return self.fs.read_range(name, 0, self.fs.stat(name).size)

    def assertConsistent(self):
        self.assertEqual(self.fs.check(), [])


def _pattern(n, seed=0):
    return bytes((i * 31 + seed) & 0xFF for i in range(n))


class TestInsertRetrieve(MFSTestCase):

    def test_roundtrip_sizes(self):
        for size in (0, 1, BS - 1, BS, BS + 1, MAX_FILE):
            with self.subTest(size=size):
                data = _pattern(size, size)
                name = f"file{size}"
                info = self.put(name, data)
                self.assertEqual(info.size, size)
                self.assertEqual(len(info.blocks), -(-size // BS))
                dest = os.path.join(self.tmp, name + ".out")
                self.assertEqual(self.fs.retrieve(name, dest), size)
                with open(dest, "rb") as f:
                    self.assertEqual(f.read(), data)
        self.assertConsistent()

    def test_uses_base_name(self):
        sub = os.path.join(self.tmp, "sub")
        os.mkdir(sub)
        path = os.path.join(sub, "deep.txt")
        with open(path, "wb") as f:
            f.write(b"x")
        self.assertEqual(self.fs.insert(path).name, "deep.txt")

    def test_space_conservation(self):
        free = self.fs.df()
        a = self.put("a", bytes(1000))
        b = self.put("b", bytes(10))
        used = (len(a.blocks) + len(b.blocks)) * BS
        self.assertEqual(self.fs.df(), free - used)
        self.fs.delete("a")
        self.fs.delete("b")
        self.assertEqual(self.fs.df(), free)

    def test_blocks_are_disjoint(self):
        files = [self.put(f"f{i}", _pattern(300 * i + 1)) for i in range(8)]
        seen = set()
        for info in files:
            self.assertTrue(seen.isdisjoint(info.blocks))
            seen.update(info.blocks)
        self.assertConsistent()

    def test_max_size_boundary(self):
        self.put("big", bytes(MAX_FILE))
        with self.assertRaises(TooLarge):
            self.put("bigger", bytes(MAX_FILE + 1))
        with self.assertRaises(ValueError):
            self.put("bigger2", bytes(MAX_FILE + 1))

    def test_name_collision_leaves_image_unchanged(self):
        self.put("dup", b"first")
        before = bytes(self.fs.store.img)
        with self.assertRaises(AlreadyExists):
            self.put("dup", b"second")
        self.assertEqual(bytes(self.fs.store.img), before)
        self.assertEqual(self.content("dup"), b"first")

    def test_name_too_long(self):
        with self.assertRaises(NameTooLong):
            self.put("n" * 65, b"x")
        self.assertEqual(self.put("n" * 64, b"x").name, "n" * 64)
        with self.assertRaises(NameTooLong):
            self.put("\u00e9" * 33, b"x")      # 66 bytes of UTF-8

    def test_name_not_utf8(self):
        path = os.fsdecode(os.path.join(os.fsencode(self.tmp), b"caf\xe9.txt"))
        with open(path, "wb") as f:
            f.write(b"x")
        before = bytes(self.fs.store.img)
        with self.assertRaises(InvalidArgument):
            self.fs.insert(path)
        with self.assertRaises(ValueError):
            self.fs.insert(path)
        self.assertEqual(bytes(self.fs.store.img), before)

    def test_missing_source(self):
        with self.assertRaises(SourceNotFound):
            self.fs.insert(os.path.join(self.tmp, "nope"))
        with self.assertRaises(FileNotFoundError):
            self.fs.insert(os.path.join(self.tmp, "nope"))

    def test_source_is_directory(self):
        os.mkdir(os.path.join(self.tmp, "dir"))
        with self.assertRaises(SourceNotFound):
            self.fs.insert(os.path.join(self.tmp, "dir"))

    def test_retrieve_missing(self):
        with self.assertRaises(NotFound):
            self.fs.retrieve("ghost", os.path.join(self.tmp, "out"))

    def test_retrieve_bad_destination(self):
        self.put("a", b"abc")
        with self.assertRaises(DestinationError):
            self.fs.retrieve("a", os.path.join(self.tmp, "no", "such", "dir"))

    def test_retrieve_cancelled_removes_output(self):
        self.put("a", bytes(1000))
        dest = os.path.join(self.tmp, "out")
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(Cancelled):
            self.fs.retrieve("a", dest, cancel=cancel)
        self.assertFalse(os.path.exists(dest))

    def test_directory_exhausted(self):
        for i in range(SMALL.num_files):
            self.put(f"e{i}", b"")
        with self.assertRaises(Exhausted):
            self.put("one-too-many", b"")
        self.assertEqual(len(self.fs.list()), SMALL.num_files)

    def test_concurrent_inserts(self):
        paths = [self.host(f"t{i}", _pattern(700, i)) for i in range(8)]
        errors = []

        def worker(path):
            try:
                self.fs.insert(path)
            except MFSError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(p,)) for p in paths]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(errors, [])
        for i in range(8):
            self.assertEqual(self.content(f"t{i}"), _pattern(700, i))
        self.assertConsistent()


class TestCapacity(MFSTestCase):
    config = TINY

    def test_insufficient_space(self):
        free = self.fs.df()
        self.assertEqual(free, 42 * BS)
        with self.assertRaises(InsufficientSpace):
            self.put("huge", bytes(free + 1))
        self.assertEqual(self.fs.df(), free)

    def test_fill_exactly(self):
        self.put("all", bytes(self.fs.df()))
        self.assertEqual(self.fs.df(), 0)
        with self.assertRaises(InsufficientSpace):
            self.put("more", b"x")
        self.put("empty", b"")
        self.assertConsistent()


class TestInsertRollback(MFSTestCase):
    allocator_cls = _FailAfter

    def test_mid_copy_failure(self):
        self.put("keep", b"k" * 10)
        free = self.fs.df()
        listing = self.fs.list()
        self.fs.alloc.limit = 2
        with self.assertRaises(Exhausted):
            self.put("partial", bytes(5 * BS))
        self.assertEqual(self.fs.df(), free)
        self.assertEqual(self.fs.list(), listing)
        with self.assertRaises(NotFound):
            self.fs.stat("partial")
        self.assertConsistent()

        self.fs.alloc.limit = None
        self.assertEqual(self.put("partial", bytes(5 * BS)).inode, 1)

    def test_rollback_keeps_deleted_record(self):
        self.put("old", _pattern(3 * BS))
        self.fs.delete("old")
        self.fs.alloc.limit = 1
        with self.assertRaises(Exhausted):
            self.put("new", bytes(2 * BS))
        self.assertEqual(self.fs.deleted(), [(0, "old")])
        # The failed copy overwrote old's first block.
        with self.assertRaises(UndeleteConflict):
            self.fs.undelete("old")
        self.assertConsistent()


class TestInsertCancel(MFSTestCase):
    allocator_cls = _CancelOnAllocate

    def test_cancel_before_start(self):
        free = self.fs.df()
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(Cancelled):
            self.fs.insert(self.host("c", bytes(BS * 3)), cancel=cancel)
        self.assertEqual(self.fs.df(), free)
        self.assertEqual(self.fs.list(), [])

    def test_cancel_mid_copy(self):
        free = self.fs.df()
        cancel = threading.Event()
        self.fs.alloc.event = cancel
        with self.assertRaises(Cancelled) as cm:
            self.fs.insert(self.host("c", bytes(BS * 3)), cancel=cancel)
        self.assertEqual(cm.exception.operation, "insert")
        self.assertEqual(self.fs.df(), free)
        self.assertEqual(self.fs.list(), [])
        self.assertConsistent()


class TestRead(MFSTestCase):

    def setUp(self):
        super().setUp()
        self.data = b"Hello, MFS!\n" + bytes(range(256)) + b"tail"
        self.put("f", self.data)

    def test_read_range_across_blocks(self):
        self.assertEqual(self.fs.read_range("f", BS - 2, 4),
                         self.data[BS - 2 : BS + 2])

    def test_length_clamped(self):
        self.assertEqual(self.fs.read_range("f", 10, 10_000), self.data[10:])
        rows = self.fs.read("f", 0, 10_000)
        self.assertEqual(len(rows), -(-len(self.data) // 16))

    def test_first_row(self):
        rows = self.fs.read("f", 0, 16)
        self.assertEqual(rows[0],
                         "000000: 48 65 6C 6C 6F 2C 20 4D 46 53 21 0A 00 01 02 03  "
                         "|Hello, MFS!.....|")

    def test_unaligned_offset(self):
        rows = self.fs.read("f", 7, 4)
        self.assertEqual(rows, [
            "000000: " + "-- " * 7 + "4D 46 53 21 " + "   " * 5 +
            " |" + " " * 7 + "MFS!" + " " * 5 + "|"
        ])

    def test_at_end_is_empty(self):
        self.assertEqual(self.fs.read("f", len(self.data), 16), [])
        self.put("empty", b"")
        self.assertEqual(self.fs.read("empty", 0, 16), [])

    def test_past_end(self):
        with self.assertRaises(InvalidArgument) as cm:
            self.fs.read("f", len(self.data) + 1, 1)
        self.assertIn(f"only {len(self.data)} bytes", str(cm.exception))

    def test_negative(self):
        with self.assertRaises(InvalidArgument):
            self.fs.read("f", -1, 4)
        with self.assertRaises(InvalidArgument):
            self.fs.read("f", 0, -4)

    def test_missing(self):
        with self.assertRaises(NotFound):
            self.fs.read("g", 0, 1)


class TestDeleteUndelete(MFSTestCase):

    def test_undelete_roundtrip(self):
        data = _pattern(600)
        self.put("a", data)
        free = self.fs.df()
        self.fs.delete("a")
        self.assertEqual(self.fs.list(), [])
        self.assertEqual(self.fs.deleted(), [(0, "a")])
        info = self.fs.undelete("a")
        self.assertEqual(info.size, 600)
        self.assertEqual(self.content("a"), data)
        self.assertEqual(self.fs.df(), free)
        self.assertEqual(self.fs.deleted(), [])
        self.assertConsistent()

    def test_delete_missing(self):
        with self.assertRaises(NotFound):
            self.fs.delete("nothing")

    def test_undelete_missing(self):
        with self.assertRaises(NotFound):
            self.fs.undelete("nothing")

    def test_refused_after_block_reuse(self):
        self.put("keep", b"k" * 10)
        self.put("a", b"a" * 10)
        self.fs.delete("keep")
        self.fs.delete("a")
        self.put("b", b"b" * 300)      # takes both freed blocks
        with self.assertRaises(UndeleteConflict):
            self.fs.undelete("a")
        self.fs.delete("b")
        # Blocks are free again but were written since "a" was deleted.
        with self.assertRaises(UndeleteConflict):
            self.fs.undelete("a")
        self.assertEqual(self.content_after_undelete("b"), b"b" * 300)
        self.assertConsistent()

    def content_after_undelete(self, name):
        self.fs.undelete(name)
        return self.content(name)

    def test_ambiguous(self):
        self.put("x", b"x" * 10)
        self.put("a", b"old")
        self.fs.delete("a")
        self.fs.delete("x")
        self.put("a", b"new")          # slot 0, over x's entry
        self.fs.delete("a")
        with self.assertRaises(Ambiguous) as cm:
            self.fs.undelete("a")
        self.assertEqual(cm.exception.slots, [0, 1])
        with self.assertRaises(NotFound):
            self.fs.undelete("a", slot=5)
        self.assertEqual(self.fs.undelete("a", slot=1).slot, 1)
        self.assertEqual(self.content("a"), b"old")
        with self.assertRaises(AlreadyExists):
            self.fs.undelete("a", slot=0)
        self.assertConsistent()

    def test_live_name_blocks_undelete(self):
        self.put("x", b"x")
        self.put("a", b"old")
        self.fs.delete("a")
        self.fs.delete("x")
        self.put("a", b"new")
        with self.assertRaises(AlreadyExists):
            self.fs.undelete("a")


class TestRecycledInode(MFSTestCase):
    allocator_cls = _FreshSlotAllocator

    def test_recycled_inode_detaches_deleted_entry(self):
        self.put("a", b"aaa")
        self.fs.delete("a")
        b = self.put("b", b"bbb")
        self.assertEqual((b.slot, b.inode), (1, 0))
        self.assertEqual(self.fs.deleted(), [])
        with self.assertRaises(NotFound):
            self.fs.undelete("a")
        self.assertConsistent()


class TestAttributes(MFSTestCase):

    def setUp(self):
        super().setUp()
        self.put("a", b"a")
        self.put("b", b"b")

    def test_hidden(self):
        self.assertEqual(self.fs.attrib("a", "+h"), 0x01)
        self.assertEqual([f.name for f in self.fs.list()], ["b"])
        listing = self.fs.list(include_hidden=True)
        self.assertEqual([f.name for f in listing], ["a", "b"])
        self.assertTrue(listing[0].hidden)
        self.fs.attrib("a", "-h")
        self.assertEqual(len(self.fs.list()), 2)

    def test_read_only_blocks_delete(self):
        self.fs.attrib("a", "+r")
        with self.assertRaises(ReadOnly):
            self.fs.delete("a")
        with self.assertRaises(PermissionError):
            self.fs.delete("a")
        self.assertTrue(self.fs.stat("a").read_only)
        self.fs.attrib("a", "-r")
        self.fs.delete("a")
        self.assertEqual([f.name for f in self.fs.list()], ["b"])

    def test_flags_combine(self):
        self.fs.attrib("a", "+h")
        self.assertEqual(self.fs.attrib("a", "+r"), 0x03)
        self.assertEqual(self.fs.attrib("a", "-h"), 0x02)

    def test_bad_op(self):
        for op in ("h", "+x", "*h", "+hr", ""):
            with self.subTest(op=op):
                with self.assertRaises(InvalidArgument):
                    self.fs.attrib("a", op)

    def test_missing(self):
        with self.assertRaises(NotFound):
            self.fs.attrib("zzz", "+h")


class TestCipher(MFSTestCase):

    def setUp(self):
        super().setUp()
        self.data = _pattern(300)
        self.info = self.put("f", self.data)

    def test_every_byte_key_is_involution(self):
        for key in range(256):
            self.assertEqual(self.fs.encrypt("f", key), 300)
            if key:
                self.assertNotEqual(self.content("f"), self.data)
            self.fs.decrypt("f", key)
            self.assertEqual(self.content("f"), self.data)

    def test_repeating_key(self):
        key = b"abc"
        self.fs.encrypt("f", key)
        expected = bytes(b ^ key[i % 3] for i, b in enumerate(self.data))
        self.assertEqual(self.content("f"), expected)
        self.fs.decrypt("f", "abc")
        self.assertEqual(self.content("f"), self.data)

    def test_block_padding_untouched(self):
        self.fs.encrypt("f", 0xFF)
        last = self.fs.store.read_block(self.info.blocks[-1])
        self.assertEqual(last[300 - BS:], bytes(2 * BS - 300))

    def test_bad_keys(self):
        with self.assertRaises(InvalidArgument):
            self.fs.encrypt("f", b"")
        with self.assertRaises(InvalidArgument):
            self.fs.encrypt("f", 256)

    def test_missing(self):
        with self.assertRaises(NotFound):
            self.fs.encrypt("nope", 1)


class TestImageLifecycle(unittest.TestCase):

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp = tmp.name
        self.image = os.path.join(self.tmp, "disk.img")

    def test_save_and_reopen(self):
        src = os.path.join(self.tmp, "notes.txt")
        with open(src, "wb") as f:
            f.write(b"persist me")
        fs = format_image(self.image, SMALL)
        fs.insert(src)
        fs.attrib("notes.txt", "+h")
        self.assertEqual(fs.save(), SMALL.num_blocks)
        self.assertEqual(os.path.getsize(self.image), SMALL.image_size)

        again = open_image(self.image, SMALL)
        info = again.stat("notes.txt")
        self.assertTrue(info.hidden)
        self.assertEqual(again.read_range("notes.txt", 0, 100), b"persist me")
        self.assertEqual(again.df(), fs.df())
        self.assertEqual(again.check(), [])

    def test_create_does_not_write_until_save(self):
        fs = MFS(SMALL)
        fs.create(self.image)
        self.assertTrue(fs.is_open)
        self.assertEqual(os.path.getsize(self.image), 0)
        fs.save()
        self.assertEqual(os.path.getsize(self.image), SMALL.image_size)

    def test_create_bad_path(self):
        with self.assertRaises(DestinationError):
            MFS(SMALL).create(os.path.join(self.tmp, "no", "disk.img"))

    def test_save_elsewhere(self):
        fs = format_image(self.image, SMALL)
        other = os.path.join(self.tmp, "copy.img")
        fs.save(other)
        open_image(other, SMALL)

    def test_save_without_path(self):
        fs = MFS(SMALL)
        fs.format()
        with self.assertRaises(InvalidArgument):
            fs.save()

    def test_open_missing(self):
        with self.assertRaises(SourceNotFound):
            open_image(os.path.join(self.tmp, "none.img"), SMALL)

    def test_open_wrong_size(self):
        format_image(self.image, SMALL)
        with self.assertRaises(ImageFormatError):
            open_image(self.image, SMALL.with_overrides(num_blocks=1024))

    def test_open_geometry_mismatch(self):
        format_image(self.image, SMALL)
        for other in (SMALL.with_overrides(num_files=16),
                      SMALL.with_overrides(first_data_block=200)):
            with self.subTest(config=other):
                with self.assertRaises(ImageFormatError):
                    open_image(self.image, other)

    def test_open_not_an_image(self):
        with open(self.image, "wb") as f:
            f.write(bytes(SMALL.image_size))
        with self.assertRaises(ImageFormatError):
            open_image(self.image, SMALL)

    def test_not_open(self):
        fs = MFS(SMALL)
        self.assertFalse(fs.is_open)
        for call in (fs.list, fs.df, fs.close, fs.save, fs.info, fs.check,
                     fs.deleted):
            with self.subTest(call=call.__name__):
                with self.assertRaises(NotOpen):
                    call()
        with self.assertRaises(NotOpen):
            fs.insert(self.image)
        with self.assertRaises(NotOpen):
            fs.read("x", 0, 1)

    def test_close(self):
        fs = format_image(self.image, SMALL)
        fs.close()
        with self.assertRaises(NotOpen):
            fs.df()
        with self.assertRaises(NotOpen):
            fs.close()

    def test_info(self):
        fs = format_image(self.image, SMALL)
        info = fs.info()
        self.assertEqual(info["block_size"], 256)
        self.assertEqual(info["total_blocks"], 2048)
        self.assertEqual(info["data_start"], 115)
        self.assertEqual(info["free_blocks"], 1933)
        self.assertEqual(info["files"], 0)
        self.assertEqual(info["bytes_free"], 1933 * 256)
        self.assertEqual(info["allocator"], "LinearScanAllocator")

    def test_check_reports_damage(self):
        fs = format_image(self.image, SMALL)
        src = os.path.join(self.tmp, "a")
        with open(src, "wb") as f:
            f.write(b"abc")
        block = fs.insert(src).blocks[0]
        fs.meta.set_block_free(block, True)
        errors = fs.check()
        self.assertTrue(any("marked free" in e for e in errors))


@pytest.mark.slow
class TestReferenceImage(unittest.TestCase):
    """Default 64 MiB geometry."""

    def test_full_size_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            fs = format_image(os.path.join(tmp, "ref.img"))
            self.assertEqual(fs.info()["data_start"], 1620)
            src = os.path.join(tmp, "mib.bin")
            data = _pattern(fs.config.max_file_size)
            with open(src, "wb") as f:
                f.write(data)
            info = fs.insert(src)
            self.assertEqual(len(info.blocks), 1024)
            with self.assertRaises(TooLarge):
                fs.insert(self.host_copy(src, data + b"!"))
            fs.save()
            again = open_image(os.path.join(tmp, "ref.img"))
            self.assertEqual(again.read_range("mib.bin", 0, len(data)), data)

    @staticmethod
    def host_copy(src, data):
        path = src + ".big"
        with open(path, "wb") as f:
            f.write(data)
        return path


if __name__ == "__main__":
    unittest.main()
