"""
Removal of host security extended attributes
Android stamps IMA, SELinux and capability attributes on files it writes; the chroot
kernel context rejects or mishandles them, so they are stripped after unpacking.
All non-portable calls live in this module.
"""

import os
import sys
import logging

logger = logging.getLogger(__name__)

SECURITY_ATTRIBUTES = (
    'security.ima',
    'security.selinux',
    'security.capability',
)

# Virtual filesystems and bind-mount targets; never stripped or descended into
EXCLUDED_DIRS = frozenset(['proc', 'sys', 'dev', 'sdcard'])


def _strip_linux(path):
    for name in SECURITY_ATTRIBUTES:
        try:
            os.removexattr(path, name, follow_symlinks=False)
        except OSError:
            # Attribute absent or filesystem without xattr support
            pass


def _strip_unsupported(path):
    pass


if sys.platform.startswith('linux') and hasattr(os, 'removexattr'):
    _strip_impl = _strip_linux
else:
    _strip_impl = _strip_unsupported


def strip_security_attributes(path):
    """Remove the security attribute namespaces from a single entry (symlinks are not followed)"""
    _strip_impl(os.fspath(path))


def clean_tree(root):
    """Strip security attributes from every entry below root

    Directories named proc, sys, dev or sdcard are skipped entirely at every
    level, neither cleaned nor descended into: once the start script has
    bind-mounted them they are the host's own trees. Unreadable directories are
    logged and skipped. Returns the number of visited entries.
    """
    visited = 0
    pending = [os.fspath(root)]

    while pending:
        current = pending.pop()
        try:
            entries = list(os.scandir(current))
        except OSError as e:
            logger.warning(f"Unable to read directory {current}: {e}")
            continue

        for entry in entries:
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError:
                is_dir = False

            if is_dir:
                if entry.name in EXCLUDED_DIRS:
                    continue
                pending.append(entry.path)

            strip_security_attributes(entry.path)
            visited += 1

    logger.debug(f"Security attribute cleanup visited {visited} entries under {root}")
    return visited
