"""
Distribution catalog
Plain records describing downloadable root filesystems, grouped by distribution,
plus helpers to derive install identities and find what is already installed.
"""

import os
import re
import logging
import platform
from collections import namedtuple
from enum import Enum

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class DistroFamily(Enum):
    """Package-manager family; decides the first-boot bootstrap logic"""

    ALPINE = 'alpine'
    ARCH = 'arch'
    VOID = 'void'
    FEDORA = 'fedora'
    DEBIAN = 'debian'

    @property
    def shell(self):
        # musl/busybox base has no bash until first boot installs it
        return '/bin/sh' if self is DistroFamily.ALPINE else '/bin/bash'

    @classmethod
    def parse(cls, value):
        """Accept an enum member, its value, or a distribution name such as 'ubuntu' or 'kali'"""
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower()
        for member in cls:
            if name == member.value or name == member.name.lower():
                return member
        if name in ('ubuntu', 'kali', 'debian-family', 'debianfamily'):
            return cls.DEBIAN
        raise ValueError(f"Unknown distribution family: {value}")


DistroSpec = namedtuple('DistroSpec', ['display_name', 'codename', 'version', 'source_url', 'family'])
DistroGroup = namedtuple('DistroGroup', ['name', 'description', 'family', 'variants'])
InstalledDistro = namedtuple('InstalledDistro', ['name', 'path', 'script_path', 'users'])

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._+-]')


def _safe_token(value):
    token = _UNSAFE_CHARS.sub('_', str(value).strip())
    # Never produce '.' or '..' path components
    return token.strip('.') or '_'


def install_target(distro):
    """Derive the install identity '{family}-{codename}-{version}' for a distribution

    The family token is the lower-cased first word of the display name.
    """
    words = distro.display_name.split()
    family_token = words[0].lower() if words else 'linux'
    return '-'.join(_safe_token(part) for part in (family_token, distro.codename, distro.version))


def detect_architecture():
    """Get current machine architecture in kernel (uname) naming"""
    machine = platform.machine().lower()

    arch_map = {
        'aarch64': 'aarch64',
        'arm64': 'aarch64',
        'x86_64': 'x86_64',
        'amd64': 'x86_64',
        'armv7l': 'armv7l',
        'armv8l': 'armv7l',
        'armv7': 'armv7l',
    }

    normalized = arch_map.get(machine)
    if normalized:
        return normalized
    logger.warning(f"Unrecognized architecture: {machine}, catalog URLs may not match")
    return machine


def _ubuntu(arch):
    deb_arch = {'aarch64': 'arm64', 'x86_64': 'amd64'}.get(arch, 'armhf')
    base = 'https://cdimage.ubuntu.com/ubuntu-base/releases'
    releases = [
        ('Ubuntu 20.04 LTS (Focal Fossa)', 'focal', '20.04.5', '20.04/release'),
        ('Ubuntu 22.04 LTS (Jammy Jellyfish)', 'jammy', '22.04.5', '22.04/release'),
        ('Ubuntu 24.04 LTS (Noble Numbat)', 'noble', '24.04.3', '24.04/release'),
        ('Ubuntu 26.04 LTS (Resolute Raccoon)', 'resolute', '26.04', '26.04/snapshot1'),
    ]
    variants = [
        DistroSpec(name, codename, version,
                   f'{base}/{path}/ubuntu-base-{version}-base-{deb_arch}.tar.gz',
                   DistroFamily.DEBIAN)
        for name, codename, version, path in releases
    ]
    return DistroGroup('Ubuntu', 'Popular, user-friendly, Debian-based.', DistroFamily.DEBIAN, variants)


def _debian(arch):
    if arch != 'aarch64':
        return DistroGroup('Debian', 'AArch64 Only for now', DistroFamily.DEBIAN, [])
    base = 'https://github.com/HanSoBored/Debootstrap-Linux/releases/download/debian'
    releases = [
        ('Debian 11 (Bullseye)', 'bullseye', '11'),
        ('Debian 12 (Bookworm)', 'bookworm', '12'),
        ('Debian 13 (Trixie)', 'trixie', '13'),
    ]
    variants = [
        DistroSpec(name, codename, version, f'{base}/debian-{codename}-aarch64.tar.gz', DistroFamily.DEBIAN)
        for name, codename, version in releases
    ]
    return DistroGroup('Debian', 'Stable, reliable, widely-used server distro.', DistroFamily.DEBIAN, variants)


def _alpine(arch):
    alp_arch = {'aarch64': 'aarch64', 'x86_64': 'x86_64'}.get(arch, 'armv7')
    base = 'https://dl-cdn.alpinelinux.org/alpine'
    variants = []
    for branch, version in (('3.20', '3.20.8'), ('3.21', '3.21.5'), ('3.22', '3.22.2'), ('3.23', '3.23.0')):
        variants.append(DistroSpec(
            f'Alpine {branch}', 'release', version,
            f'{base}/v{branch}/releases/{alp_arch}/alpine-minirootfs-{version}-{alp_arch}.tar.gz',
            DistroFamily.ALPINE,
        ))
    variants.append(DistroSpec(
        'Alpine Edge', 'edge', 'rolling',
        f'{base}/edge/releases/{alp_arch}/alpine-minirootfs-20251016-{alp_arch}.tar.gz',
        DistroFamily.ALPINE,
    ))
    return DistroGroup('Alpine Linux', 'Security-oriented, lightweight (musl libc & busybox).',
                       DistroFamily.ALPINE, variants)


def _arch_linux(arch):
    if arch != 'aarch64':
        return DistroGroup('Arch Linux', 'AArch64 Only for now', DistroFamily.ARCH, [])
    variants = [
        DistroSpec('Arch Linux ARM (Generic)', 'rolling', 'latest',
                   'http://os.archlinuxarm.org/os/ArchLinuxARM-aarch64-latest.tar.gz', DistroFamily.ARCH),
    ]
    return DistroGroup('Arch Linux', 'Rolling release, lightweight, pacman package manager.',
                       DistroFamily.ARCH, variants)


def _kali(arch):
    deb_arch = {'aarch64': 'arm64', 'x86_64': 'amd64'}.get(arch, 'armhf')
    base = 'https://kali.download/nethunter-images'
    releases = [
        ('Kali Linux 2025.1', '2025.1c', 'kali-2025.1c'),
        ('Kali Linux 2025.2', '2025.2', 'kali-2025.2'),
        ('Kali Linux 2025.3', '2025.3', 'kali-2025.3'),
        ('Kali Linux (Current)', 'latest', 'current'),
    ]
    variants = [
        DistroSpec(name, 'kali-rolling', version,
                   f'{base}/{path}/rootfs/kali-nethunter-rootfs-nano-{deb_arch}.tar.xz',
                   DistroFamily.DEBIAN)
        for name, version, path in releases
    ]
    return DistroGroup('Kali Linux', 'Security-focused distro for penetration testing.',
                       DistroFamily.DEBIAN, variants)


def _void(arch):
    void_arch = {'aarch64': 'aarch64', 'x86_64': 'x86_64-musl'}.get(arch, 'armv7l-musl')
    base = 'https://repo-default.voidlinux.org/live'
    variants = [
        DistroSpec('Void Linux', 'rolling', stamp,
                   f'{base}/{stamp}/void-{void_arch}-ROOTFS-{stamp}.tar.xz', DistroFamily.VOID)
        for stamp in ('20240314', '20250202')
    ]
    return DistroGroup('Void Linux', 'Modern Linux distro with rolling releases and XBPS.',
                       DistroFamily.VOID, variants)


def _fedora(arch):
    fed_arch = {'aarch64': 'aarch64', 'x86_64': 'x86_64'}.get(arch, 'armhfp')
    archive = 'https://archives.fedoraproject.org/pub/archive/fedora/linux/releases'
    mirror = 'https://mirror.twds.com.tw/fedora/fedora/linux/releases'
    variants = [
        DistroSpec('Fedora 40', '40', '40-1.14',
                   f'{archive}/40/Container/{fed_arch}/images/'
                   f'Fedora-Container-Base-Generic.{fed_arch}-40-1.14.oci.tar.xz', DistroFamily.FEDORA),
    ]
    for release, codename, version in (('41', '41', '41-1.4'), ('42', 'adams', '42-1.1'), ('43', '43', '43-1.6')):
        name = 'Fedora 42 (Adams)' if release == '42' else f'Fedora {release}'
        variants.append(DistroSpec(
            name, codename, version,
            f'{mirror}/{release}/Container/{fed_arch}/images/'
            f'Fedora-Container-Base-Generic-{version}.{fed_arch}.oci.tar.xz',
            DistroFamily.FEDORA,
        ))
    return DistroGroup('Fedora', 'Cutting-edge, community-driven Red Hat distro.', DistroFamily.FEDORA, variants)


def builtin_catalog(arch=None):
    """Built-in distribution groups for the given (or detected) architecture"""
    arch = arch or detect_architecture()
    return [
        _ubuntu(arch),
        _debian(arch),
        _alpine(arch),
        _arch_linux(arch),
        _kali(arch),
        _void(arch),
        _fedora(arch),
    ]


def load_catalog(path):
    """Load distribution groups from a YAML catalog file"""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f) or []
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read catalog {path}: {e}") from e

    if isinstance(raw, dict):
        raw = raw.get('groups') or []
    if not isinstance(raw, list):
        raise ConfigurationError(f"Catalog {path} must contain a list of groups")

    groups = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Invalid catalog group in {path}: {entry!r}")
        try:
            family = DistroFamily.parse(entry.get('family') or entry.get('name', ''))
            variants = []
            for variant in entry.get('variants') or []:
                variants.append(DistroSpec(
                    str(variant['display_name']),
                    str(variant['codename']),
                    str(variant['version']),
                    str(variant['source_url']),
                    DistroFamily.parse(variant.get('family', family)),
                ))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid catalog entry in {path}: {e}") from e
        groups.append(DistroGroup(str(entry.get('name', family.value)),
                                  str(entry.get('description', '')), family, variants))

    logger.debug(f"Loaded {len(groups)} distribution groups from {path}")
    return groups


def all_variants(groups):
    return [variant for group in groups for variant in group.variants]


def users_from_passwd(passwd_path):
    """Login users of a tree: root plus regular accounts"""
    users = ['root']
    try:
        with open(passwd_path, 'r', encoding='utf-8', errors='ignore') as handle:
            for line in handle:
                parts = line.strip().split(':')
                if len(parts) < 3:
                    continue
                try:
                    uid = int(parts[2])
                except ValueError:
                    continue
                if 1000 <= uid < 60000:
                    users.append(parts[0])
    except OSError as e:
        logger.debug(f"Failed to read {passwd_path}: {e}")
    return users


def scan_installed(base_dir):
    """List installed distributions under base_dir"""
    results = []
    try:
        names = sorted(os.listdir(base_dir))
    except OSError as e:
        logger.debug(f"Cannot list {base_dir}: {e}")
        return results

    for name in names:
        path = os.path.join(base_dir, name)
        if not os.path.isdir(path) or os.path.islink(path):
            continue
        script_path = os.path.join(base_dir, f'start-{name}.sh')
        if os.path.exists(script_path) and os.path.isdir(os.path.join(path, 'etc')):
            users = users_from_passwd(os.path.join(path, 'etc', 'passwd'))
            results.append(InstalledDistro(name, path, script_path, users))
    return results
