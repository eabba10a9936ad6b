#!/usr/bin/env python3
"""
Tests for archive detection and unpacking
"""

import io
import os
import sys
import stat
import shutil
import tarfile
import tempfile
import unittest
from hypothesis import given, strategies as st, settings

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from autolinux.errors import ExtractionError
from autolinux.unpacker import (
    XZ_MAGIC,
    ArchiveUnpacker,
    detect_compression,
    sniff_magic,
)

FIXED_MTIME = 1700000000


def _add_file(tar, name, data, mode=0o644):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    info.mtime = FIXED_MTIME
    tar.addfile(info, io.BytesIO(data))


def _add_dir(tar, name, mode=0o755):
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    info.mtime = FIXED_MTIME
    tar.addfile(info)


def build_archive(path, compression):
    """Write a small rootfs-like tarball with the given compression ('gz' or 'xz')"""
    with tarfile.open(path, f'w:{compression}') as tar:
        _add_dir(tar, 'bin')
        _add_dir(tar, 'etc')
        _add_file(tar, 'bin/busybox', b'\x7fELF fake', mode=0o755)
        _add_file(tar, 'etc/os-release', b'ID=alpine\n')
        link = tarfile.TarInfo('bin/sh')
        link.type = tarfile.SYMTYPE
        link.linkname = '/bin/busybox'
        link.mtime = FIXED_MTIME
        tar.addfile(link)


class TestCompressionDetection(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp(prefix='test_unpacker_')

    def tearDown(self):
        if os.path.exists(self.test_dir):
            shutil.rmtree(self.test_dir)

    def test_xz_detected_regardless_of_name(self):
        path = os.path.join(self.test_dir, 'rootfs.tar.gz')
        build_archive(path, 'xz')
        self.assertEqual(detect_compression(path), 'xz')

    def test_gzip_detected(self):
        path = os.path.join(self.test_dir, 'rootfs.tar.xz')
        build_archive(path, 'gz')
        self.assertEqual(detect_compression(path), 'gzip')

    def test_unknown_falls_back_to_gzip(self):
        path = os.path.join(self.test_dir, 'rootfs.bin')
        with open(path, 'wb') as f:
            f.write(b'PK\x03\x04 not a tarball')
        self.assertEqual(detect_compression(path), 'gzip')

    def test_short_file_falls_back_to_gzip(self):
        path = os.path.join(self.test_dir, 'tiny')
        with open(path, 'wb') as f:
            f.write(b'\xfd7')
        self.assertEqual(detect_compression(path), 'gzip')

    @given(st.binary(min_size=0, max_size=16))
    @settings(max_examples=100)
    def test_sniff_magic_prefix_rule(self, tail):
        """Anything starting with the XZ magic is XZ; otherwise gzip magic or nothing"""
        self.assertEqual(sniff_magic(XZ_MAGIC + tail), 'xz')
        result = sniff_magic(tail)
        if tail[:6] == XZ_MAGIC:
            self.assertEqual(result, 'xz')
        elif tail[:2] == b'\x1f\x8b':
            self.assertEqual(result, 'gzip')
        else:
            self.assertIsNone(result)


class TestArchiveUnpacker(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp(prefix='test_unpacker_')
        self.dest = os.path.join(self.test_dir, 'rootfs')
        self.unpacker = ArchiveUnpacker()

    def tearDown(self):
        if os.path.exists(self.test_dir):
            shutil.rmtree(self.test_dir)

    def _check_tree(self):
        busybox = os.path.join(self.dest, 'bin', 'busybox')
        self.assertTrue(os.path.isfile(busybox))
        self.assertEqual(stat.S_IMODE(os.stat(busybox).st_mode), 0o755)
        self.assertEqual(int(os.stat(busybox).st_mtime), FIXED_MTIME)
        self.assertEqual(int(os.stat(os.path.join(self.dest, 'etc')).st_mtime), FIXED_MTIME)
        self.assertTrue(os.path.islink(os.path.join(self.dest, 'bin', 'sh')))
        self.assertEqual(os.readlink(os.path.join(self.dest, 'bin', 'sh')), '/bin/busybox')
        with open(os.path.join(self.dest, 'etc', 'os-release'), 'rb') as f:
            self.assertEqual(f.read(), b'ID=alpine\n')

    def test_unpack_gzip(self):
        archive = os.path.join(self.test_dir, 'rootfs.tar.gz')
        build_archive(archive, 'gz')
        self.assertEqual(self.unpacker.unpack(archive, self.dest), 5)
        self._check_tree()

    def test_unpack_xz_with_misleading_name(self):
        archive = os.path.join(self.test_dir, 'rootfs.tar.gz')
        build_archive(archive, 'xz')
        self.unpacker.unpack(archive, self.dest)
        self._check_tree()

    def test_corrupt_archive_raises(self):
        archive = os.path.join(self.test_dir, 'rootfs.tar.xz')
        with open(archive, 'wb') as f:
            f.write(XZ_MAGIC + b'garbage' * 20)
        with self.assertRaises(ExtractionError) as ctx:
            self.unpacker.unpack(archive, self.dest)
        self.assertEqual(ctx.exception.archive_path, archive)

    def test_not_an_archive_raises(self):
        archive = os.path.join(self.test_dir, 'rootfs.tar.gz')
        with open(archive, 'wb') as f:
            f.write(b'<html>404</html>')
        with self.assertRaises(ExtractionError):
            self.unpacker.unpack(archive, self.dest)

    def test_unsafe_members_skipped(self):
        archive = os.path.join(self.test_dir, 'evil.tar.gz')
        with tarfile.open(archive, 'w:gz') as tar:
            _add_file(tar, '../escape.txt', b'x')
            _add_file(tar, 'etc/hostname', b'chroot\n')
        self.unpacker.unpack(archive, self.dest)
        self.assertFalse(os.path.exists(os.path.join(self.test_dir, 'escape.txt')))
        self.assertTrue(os.path.isfile(os.path.join(self.dest, 'etc', 'hostname')))


    def _symlink_member(self, name, target):
        info = tarfile.TarInfo(name)
        info.type = tarfile.SYMTYPE
        info.linkname = target
        return info

    def test_symlinked_parent_outside_rejected(self):
        outside = os.path.join(self.test_dir, 'outside')
        os.makedirs(outside)
        archive = os.path.join(self.test_dir, 'escape.tar.gz')
        with tarfile.open(archive, 'w:gz') as tar:
            tar.addfile(self._symlink_member('etc', outside))
            _add_file(tar, 'etc/passwd', b'root::0:0::/:/bin/sh\n')
            _add_file(tar, 'bin/busybox', b'\x7fELF')

        self.unpacker.unpack(archive, self.dest)

        self.assertFalse(os.path.exists(os.path.join(outside, 'passwd')))
        self.assertEqual(os.readlink(os.path.join(self.dest, 'etc')), outside)
        self.assertTrue(os.path.isfile(os.path.join(self.dest, 'bin', 'busybox')))

    def test_absolute_symlinks_kept(self):
        archive = os.path.join(self.test_dir, 'links.tar.gz')
        with tarfile.open(archive, 'w:gz') as tar:
            _add_dir(tar, 'usr')
            tar.addfile(self._symlink_member('usr/lib64', '/usr/lib'))
            _add_file(tar, 'usr/readme', b'x')
        self.unpacker.unpack(archive, self.dest)
        self.assertEqual(os.readlink(os.path.join(self.dest, 'usr', 'lib64')), '/usr/lib')
        self.assertTrue(os.path.isfile(os.path.join(self.dest, 'usr', 'readme')))

    def test_file_over_symlink_does_not_follow_it(self):
        outside = os.path.join(self.test_dir, 'host_shadow')
        with open(outside, 'wb') as f:
            f.write(b'host')
        archive = os.path.join(self.test_dir, 'overwrite.tar.gz')
        with tarfile.open(archive, 'w:gz') as tar:
            tar.addfile(self._symlink_member('shadow', outside))
            _add_file(tar, 'shadow', b'tree')

        self.unpacker.unpack(archive, self.dest)

        with open(outside, 'rb') as f:
            self.assertEqual(f.read(), b'host')
        self.assertFalse(os.path.islink(os.path.join(self.dest, 'shadow')))
        with open(os.path.join(self.dest, 'shadow'), 'rb') as f:
            self.assertEqual(f.read(), b'tree')

    def test_hardlink_outside_rejected(self):
        outside = os.path.join(self.test_dir, 'secret')
        with open(outside, 'wb') as f:
            f.write(b'secret')
        archive = os.path.join(self.test_dir, 'hardlink.tar.gz')
        with tarfile.open(archive, 'w:gz') as tar:
            tar.addfile(self._symlink_member('hostdir', self.test_dir))
            link = tarfile.TarInfo('stolen')
            link.type = tarfile.LNKTYPE
            link.linkname = 'hostdir/secret'
            tar.addfile(link)

        self.unpacker.unpack(archive, self.dest)
        self.assertFalse(os.path.exists(os.path.join(self.dest, 'stolen')))

if __name__ == '__main__':
    unittest.main()
