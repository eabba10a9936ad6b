"""
Post-processing of an unpacked root filesystem
- OCI image layouts (Fedora container images) are reduced to their rootfs layer
- A single wrapping top-level directory is flattened away
- Host security extended attributes are stripped
"""

import os
import shutil
import logging

from . import xattrs
from .errors import FilesystemError, NoLayerFoundError
from .unpacker import ArchiveUnpacker

logger = logging.getLogger(__name__)

OCI_LAYOUT_MARKER = 'oci-layout'
OCI_BLOBS_DIR = 'blobs'
LAYER_TEMP_NAME = 'rootfs_layer.tar.gz'


def _remove_entry(path):
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.remove(path)


class ImageNormalizer:
    """Normalize an unpacked tree into a plain rootfs layout"""

    def __init__(self, unpacker=None):
        self.unpacker = unpacker or ArchiveUnpacker()

    @staticmethod
    def is_oci_layout(tree):
        return (os.path.exists(os.path.join(tree, OCI_LAYOUT_MARKER))
                or os.path.exists(os.path.join(tree, OCI_BLOBS_DIR)))

    @staticmethod
    def select_rootfs_layer(blobs_dir):
        """Pick the largest regular file in blobs/sha256 as the rootfs layer

        Known limitation: the manifest's layer order is not consulted, so an image
        with several large layers may yield the wrong one. On equal sizes the first
        blob in name order wins.
        """
        if not os.path.isdir(blobs_dir):
            raise NoLayerFoundError("OCI 'blobs' directory not found.")

        best_path = None
        best_size = -1
        for name in sorted(os.listdir(blobs_dir)):
            path = os.path.join(blobs_dir, name)
            if os.path.islink(path) or not os.path.isfile(path):
                continue
            size = os.path.getsize(path)
            if size > best_size:
                best_path = path
                best_size = size

        if best_path is None:
            raise NoLayerFoundError("No layers found in OCI image.")

        logger.info(f"Found rootfs layer: {os.path.basename(best_path)} (Size: {best_size} bytes)")
        return best_path

    def extract_oci_layer(self, tree):
        """Replace an OCI layout in tree with the contents of its largest layer"""
        blobs_dir = os.path.join(tree, OCI_BLOBS_DIR, 'sha256')
        layer_path = self.select_rootfs_layer(blobs_dir)

        temp_layer_path = os.path.join(tree, LAYER_TEMP_NAME)
        try:
            os.rename(layer_path, temp_layer_path)

            for name in os.listdir(tree):
                path = os.path.join(tree, name)
                if path != temp_layer_path:
                    _remove_entry(path)
        except OSError as e:
            raise FilesystemError(f"Failed to prepare OCI layer extraction: {e}") from e

        logger.info("Extracting inner rootfs layer...")
        self.unpacker.unpack(temp_layer_path, tree)

        try:
            os.remove(temp_layer_path)
        except OSError as e:
            raise FilesystemError(f"Failed to remove temporary layer {temp_layer_path}: {e}") from e

    @staticmethod
    def flatten_nested_rootfs(tree):
        """Move the children of a lone top-level directory up one level

        Returns True when the tree was flattened.
        """
        entries = os.listdir(tree)
        if len(entries) != 1:
            return False

        nested_dir = os.path.join(tree, entries[0])
        if os.path.islink(nested_dir) or not os.path.isdir(nested_dir):
            return False

        children = os.listdir(nested_dir)
        if not children:
            # An empty wrapper carries nothing worth keeping
            os.rmdir(nested_dir)
            logger.info(f"Removed empty top-level folder: '{entries[0]}'")
            return True

        logger.info(f"Nested rootfs detected in subfolder: '{entries[0]}'. Moving files up...")

        # A child sharing the wrapper's name cannot be moved while the wrapper exists
        holding_dir = nested_dir
        if entries[0] in children:
            holding_dir = os.path.join(tree, f'.{entries[0]}.flatten')
            os.rename(nested_dir, holding_dir)

        for name in children:
            os.rename(os.path.join(holding_dir, name), os.path.join(tree, name))
        os.rmdir(holding_dir)

        logger.info("Rootfs flattened successfully.")
        return True

    @staticmethod
    def clean_security_xattrs(tree):
        """Strip security attributes from the tree; best-effort"""
        return xattrs.clean_tree(tree)

    def normalize(self, tree):
        """Run all passes in order: OCI extraction, flattening, attribute cleanup"""
        if self.is_oci_layout(tree):
            logger.info("OCI/Container Image format detected. Processing layers...")
            self.extract_oci_layer(tree)

        logger.info("Checking directory structure...")
        try:
            self.flatten_nested_rootfs(tree)
        except OSError as e:
            logger.error(f"Failed to flatten rootfs: {e}")

        logger.info("Cleaning up security extended attributes (IMA/SELinux)...")
        try:
            self.clean_security_xattrs(tree)
        except OSError as e:
            logger.error(f"Warning: Failed to clean some xattrs: {e}")
