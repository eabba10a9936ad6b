"""
Archive format detection and tar unpacking
The compression scheme is sniffed from magic bytes rather than trusted from the file
name; gzip is assumed when nothing matches.
"""

import os
import gzip
import lzma
import shutil
import logging
import tarfile
import zlib

from .errors import ExtractionError

logger = logging.getLogger(__name__)

XZ_MAGIC = b'\xfd7zXZ\x00'
GZIP_MAGIC = b'\x1f\x8b'
MAGIC_SIZE = 6

COMPRESSION_XZ = 'xz'
COMPRESSION_GZIP = 'gzip'

# Errors a decoder or the tar reader raise on corrupt or unknown input
DECODE_ERRORS = (tarfile.TarError, lzma.LZMAError, gzip.BadGzipFile, zlib.error, EOFError)


def sniff_magic(prefix):
    """Classify the first bytes of an archive"""
    if prefix[:MAGIC_SIZE] == XZ_MAGIC:
        return COMPRESSION_XZ
    if prefix[:2] == GZIP_MAGIC:
        return COMPRESSION_GZIP
    return None


def detect_compression(archive_path):
    """Return 'xz' or 'gzip' for an archive file, falling back to gzip"""
    try:
        with open(archive_path, 'rb') as f:
            magic = f.read(MAGIC_SIZE)
    except OSError as e:
        raise ExtractionError(f"Failed to read archive {archive_path}: {e}", archive_path) from e

    detected = sniff_magic(magic)
    if detected == COMPRESSION_XZ:
        logger.info("Format detected: XZ")
    elif detected == COMPRESSION_GZIP:
        logger.info("Format detected: Gzip")
    else:
        logger.info(f"Format unknown (Magic: {magic.hex()}), trying Gzip...")
        detected = COMPRESSION_GZIP

    suffix_hint = COMPRESSION_XZ if str(archive_path).endswith('.xz') else COMPRESSION_GZIP
    if suffix_hint != detected:
        logger.debug(f"File name suggests {suffix_hint}, content is {detected}")
    return detected


def open_decoder(archive_path, compression):
    if compression == COMPRESSION_XZ:
        return lzma.open(archive_path, 'rb')
    return gzip.open(archive_path, 'rb')


def _is_within(path, root):
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def _extract_kwargs():
    # Rootfs trees need absolute symlinks, setuid bits and device nodes intact;
    # path safety is enforced by ArchiveUnpacker._accept instead.
    if hasattr(tarfile, 'fully_trusted_filter'):
        return {'filter': 'fully_trusted'}
    return {}


class ArchiveUnpacker:
    """Unpack compressed tar archives preserving permission bits and mtimes"""

    def __init__(self):
        self.extract_kwargs = _extract_kwargs()

    def unpack(self, archive_path, dest_dir):
        """Decode archive_path and unpack its tar stream into dest_dir"""
        compression = detect_compression(archive_path)
        os.makedirs(dest_dir, exist_ok=True)

        try:
            with open_decoder(archive_path, compression) as stream:
                with tarfile.open(fileobj=stream, mode='r|') as tar:
                    count = self._extract_members(tar, dest_dir)
        except DECODE_ERRORS as e:
            raise ExtractionError(
                f"Failed to unpack {os.path.basename(str(archive_path))} ({compression}): {e}",
                archive_path,
            ) from e
        except OSError as e:
            raise ExtractionError(
                f"Failed to write files from {os.path.basename(str(archive_path))}: {e}",
                archive_path,
            ) from e

        logger.info(f"Unpacked {count} entries into {dest_dir}")
        return count

    def _accept(self, member, dest_root):
        """Reject entries that would land outside the destination

        dest_root must already be a realpath. Besides absolute and '..' names this
        catches entries whose parent directory is reached through a symlink that
        points out of the tree, and hard links whose target lies outside it.
        Symlink entries themselves may still point anywhere.
        """
        name = member.name
        while name.startswith('./'):
            name = name[2:]
        if name.startswith('/') or '..' in name.split('/'):
            logger.warning(f"Skipping unsafe path: {member.name}")
            return False

        parent = os.path.realpath(os.path.dirname(os.path.join(dest_root, name)))
        if not _is_within(parent, dest_root):
            logger.warning(f"Skipping {member.name}: parent directory resolves outside the tree ({parent})")
            return False

        if member.islnk():
            link_target = os.path.realpath(os.path.join(dest_root, member.linkname))
            if not _is_within(link_target, dest_root):
                logger.warning(f"Skipping hard link {member.name} -> {member.linkname}: target outside the tree")
                return False
        return True

    def _extract_members(self, tar, dest_dir):
        count = 0
        skipped_devices = 0
        directories = []

        dest_root = os.path.realpath(dest_dir)

        for member in tar:
            if not self._accept(member, dest_root):
                continue

            if member.isdir():
                # Attributes applied last, otherwise children reset the mtime
                tar.extract(member, dest_dir, set_attrs=False, **self.extract_kwargs)
                directories.append(member)
                count += 1
                continue

            # Writing a file through a symlink left by an earlier entry would follow it
            target_path = os.path.join(dest_dir, member.name)
            if os.path.islink(target_path):
                os.unlink(target_path)

            try:
                tar.extract(member, dest_dir, **self.extract_kwargs)
            except (OSError, tarfile.ExtractError, tarfile.StreamError) as e:
                if member.isdev() or member.isfifo():
                    # mknod is denied without CAP_MKNOD; the start script bind-mounts /dev anyway
                    logger.debug(f"Skipping device/FIFO file {member.name}: {e}")
                    skipped_devices += 1
                    continue
                if member.islnk() and self._copy_hardlink(member, dest_dir):
                    count += 1
                    continue
                raise

            count += 1

        self._apply_directory_attrs(tar, directories, dest_dir)

        if skipped_devices:
            logger.info(f"Skipped {skipped_devices} device/FIFO entries")
        return count

    def _apply_directory_attrs(self, tar, directories, dest_dir):
        # Deepest first, same order as TarFile.extractall
        directories.sort(key=lambda m: m.name, reverse=True)
        for member in directories:
            dirpath = os.path.join(dest_dir, member.name)
            if os.path.islink(dirpath):
                # A symlink occupies this path; chmod/chown would follow it
                continue
            try:
                tar.chown(member, dirpath, False)
                tar.utime(member, dirpath)
                tar.chmod(member, dirpath)
            except tarfile.ExtractError as e:
                logger.debug(f"Failed to restore attributes of {member.name}: {e}")

    def _copy_hardlink(self, member, dest_dir):
        """Replace a hard link that could not be created with a copy of its target"""
        target_path = os.path.join(dest_dir, member.name)
        link_target_path = os.path.join(dest_dir, member.linkname)
        if not os.path.isfile(link_target_path):
            return False

        os.makedirs(os.path.dirname(target_path), exist_ok=True)
        if os.path.lexists(target_path):
            os.remove(target_path)
        shutil.copy2(link_target_path, target_path)
        logger.debug(f"Hard link converted to file copy: {member.name} -> {member.linkname}")
        return True
