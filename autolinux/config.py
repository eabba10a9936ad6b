"""
YAML configuration for the installer
"""

import os
import sys
import shlex
import logging
import ipaddress

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_ENV = 'AUTOLINUX_CONFIG'
DNS_ENV = 'AUTOLINUX_DNS'

DEFAULT_BASE_DIR = '/data/local'
DEFAULT_NAMESERVERS = ['8.8.8.8', '8.8.4.4']
DEFAULT_HOSTS_OVERRIDES = {
    # Void's mirror is unreachable through Android's resolver from inside the chroot
    'void': ['repo-default.voidlinux.org'],
}


def default_config_path():
    home_dir = os.path.expanduser('~')
    return os.path.join(home_dir, '.config', 'autolinux', 'config.yaml')


def is_localhost_dns_server(server):
    """Return True when a DNS server points to loopback/unspecified addresses."""
    if not server:
        return True

    normalized = str(server).strip()
    if '%' in normalized:
        normalized = normalized.split('%', 1)[0]

    try:
        addr = ipaddress.ip_address(normalized)
    except ValueError:
        return True

    return addr.is_loopback or addr.is_unspecified


def _section(raw, key):
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration key '{key}' must be a mapping")
    return value


class AutoLinuxConfig:
    """Typed view over the raw configuration mapping"""

    def __init__(self, raw=None, environ=None):
        self.raw = raw or {}
        self.environ = os.environ if environ is None else environ

    @property
    def base_dir(self):
        return str(self.raw.get('base_dir') or DEFAULT_BASE_DIR)

    @property
    def nameservers(self):
        servers = []

        def add_servers(candidates):
            for candidate in candidates:
                value = str(candidate).strip()
                if not value:
                    continue
                if is_localhost_dns_server(value):
                    logger.debug(f"Ignoring loopback nameserver: {value}")
                    continue
                if value in servers:
                    continue
                servers.append(value)

        env_dns = self.environ.get(DNS_ENV, '')
        if env_dns:
            add_servers(env_dns.replace(',', ' ').split())
        if not servers:
            configured = self.raw.get('nameservers')
            if isinstance(configured, str):
                configured = configured.replace(',', ' ').split()
            add_servers(configured or [])
        if not servers:
            servers = list(DEFAULT_NAMESERVERS)
        return servers

    @property
    def hosts_overrides(self):
        overrides = self.raw.get('hosts_overrides')
        if overrides is None:
            return {k: list(v) for k, v in DEFAULT_HOSTS_OVERRIDES.items()}
        if not isinstance(overrides, dict):
            raise ConfigurationError("Configuration key 'hosts_overrides' must be a mapping")
        result = {}
        for family, hostnames in overrides.items():
            if isinstance(hostnames, str):
                hostnames = [hostnames]
            result[str(family).lower()] = [str(h) for h in (hostnames or [])]
        return result

    @property
    def probe_command(self):
        return str(_section(self.raw, 'probe').get('command') or 'ping')

    @property
    def probe_count(self):
        return int(_section(self.raw, 'probe').get('count') or 1)

    @property
    def probe_timeout(self):
        return int(_section(self.raw, 'probe').get('timeout') or 2)

    @property
    def connect_timeout(self):
        return int(_section(self.raw, 'download').get('connect_timeout') or 30)

    @property
    def chunk_size(self):
        return int(_section(self.raw, 'download').get('chunk_size') or 65536)

    @property
    def shm_size(self):
        return str(self.raw.get('shm_size') or '256M')

    @property
    def shared_storage(self):
        return str(self.raw.get('shared_storage') or '/sdcard')

    @property
    def data_partition(self):
        return str(self.raw.get('data_partition') or '/data')

    @property
    def catalog_path(self):
        path = self.raw.get('catalog')
        return os.path.expanduser(str(path)) if path else None

    @property
    def cleanup_command(self):
        command = self.raw.get('cleanup_command')
        if command:
            return str(command)
        return f'{shlex.quote(sys.executable)} -m autolinux.cli clean-xattr'

    @property
    def log_path(self):
        path = self.raw.get('log_path')
        return os.path.expanduser(str(path)) if path else None

    def install_dir(self, target):
        return os.path.join(self.base_dir, target)

    def start_script_path(self, target):
        return os.path.join(self.base_dir, f'start-{target}.sh')


def load_config(path=None, environ=None):
    """Load configuration from path, $AUTOLINUX_CONFIG or the default location"""
    environ = os.environ if environ is None else environ
    explicit = path or environ.get(CONFIG_ENV)
    config_path = explicit or default_config_path()

    if not os.path.exists(config_path):
        if explicit:
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        logger.debug(f"No configuration file at {config_path}, using defaults")
        return AutoLinuxConfig({}, environ=environ)

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read configuration {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration {config_path} must contain a mapping")

    logger.debug(f"Loaded configuration: {config_path}")
    return AutoLinuxConfig(raw, environ=environ)
