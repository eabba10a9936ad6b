"""
DNS and hosts configuration written into a provisioned tree
"""

import os
import logging

from .errors import ConfigurationError, FilesystemError, ResolutionError

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = [
    '127.0.0.1 localhost',
    '::1 localhost ip6-localhost ip6-loopback',
]

MOUNT_POINTS = ['sdcard', 'dev/shm']


class EnvironmentConfigurator:
    """Write etc/resolv.conf and etc/hosts for a distribution family"""

    def __init__(self, resolver, nameservers, hosts_overrides=None):
        self.resolver = resolver
        self.nameservers = list(nameservers)
        self.hosts_overrides = hosts_overrides or {}

    def create_mount_points(self, tree):
        for dir_path in MOUNT_POINTS:
            try:
                os.makedirs(os.path.join(tree, dir_path), exist_ok=True)
            except OSError as e:
                raise FilesystemError(f"Unable to create mount point {dir_path}: {e}") from e
        logger.info("Created mount points.")

    def write_resolv_conf(self, tree):
        resolv_path = os.path.join(tree, 'etc', 'resolv.conf')
        lines = [f'nameserver {server}' for server in self.nameservers]
        try:
            os.makedirs(os.path.dirname(resolv_path), exist_ok=True)
            # Distributions often ship resolv.conf as a (dangling) symlink into /run
            if os.path.lexists(resolv_path):
                os.remove(resolv_path)
            with open(resolv_path, 'w', encoding='utf-8') as handle:
                handle.write('\n'.join(lines) + '\n')
        except OSError as e:
            raise ConfigurationError(f"Failed to write {resolv_path}: {e}") from e
        logger.info(f"Wrote resolv.conf ({', '.join(self.nameservers)})")
        return resolv_path

    def pinned_host_lines(self, family):
        """Resolve the hostnames pinned for a family; failures are logged, not raised"""
        lines = []
        for hostname in self.hosts_overrides.get(family.value, []):
            logger.info(f"({family.value}) Resolving repo host {hostname} for /etc/hosts injection...")
            try:
                address = self.resolver.resolve(hostname)
            except ResolutionError as e:
                logger.error(f"Failed to resolve {hostname}: {e}. Installation might fail.")
                continue
            lines.append(f'{address} {hostname}')
            logger.info(f"Successfully injected: {address} -> {hostname}")
        return lines

    def write_hosts(self, tree, family):
        hosts_path = os.path.join(tree, 'etc', 'hosts')
        lines = LOOPBACK_HOSTS + self.pinned_host_lines(family)
        try:
            os.makedirs(os.path.dirname(hosts_path), exist_ok=True)
            if os.path.islink(hosts_path):
                os.remove(hosts_path)
            with open(hosts_path, 'w', encoding='utf-8') as handle:
                handle.write('\n'.join(lines) + '\n')
        except OSError as e:
            raise ConfigurationError(f"Failed to write {hosts_path}: {e}") from e
        logger.info("Wrote hosts configuration.")
        return hosts_path

    def configure(self, tree, family):
        self.create_mount_points(tree)
        self.write_resolv_conf(tree)
        self.write_hosts(tree, family)
