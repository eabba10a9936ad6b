"""
Hostname resolution through the system ping tool
Android denies normal name resolution to processes outside its network groups, but
ping is allowed to resolve; the address is read back from its human-readable output.
"""

import re
import logging
import ipaddress
import subprocess

from .errors import ResolutionError

logger = logging.getLogger(__name__)

# Innermost parenthesized tokens, e.g. "(93.184.216.34)" or "(2606:2800::1)"
_PAREN_TOKEN = re.compile(r'\(([^()]*)\)')


def parse_probe_output(output):
    """Return the first parenthesized address in ping output, or None"""
    for token in _PAREN_TOKEN.findall(output or ''):
        token = token.strip()
        if '.' in token or ':' in token:
            return token
    return None


class HostResolver:
    """Resolve hostnames with a single echo request"""

    def __init__(self, command='ping', count=1, timeout=2):
        self.command = command
        self.count = count
        self.timeout = timeout

    def _run_probe(self, hostname):
        cmd = [self.command, '-c', str(self.count), '-w', str(self.timeout), hostname]
        logger.debug(f"Executing command: {' '.join(cmd)}")
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            errors='replace',
            # ping enforces its own deadline; this only guards against a hung binary
            timeout=self.timeout + 5,
        )

    def resolve(self, hostname):
        """Resolve hostname to a literal IP address string"""
        try:
            result = self._run_probe(hostname)
        except FileNotFoundError as e:
            raise ResolutionError(f"Failed to execute {self.command}: {e}", hostname=hostname) from e
        except subprocess.TimeoutExpired as e:
            raise ResolutionError(f"{self.command} timed out resolving {hostname}", hostname=hostname) from e
        except OSError as e:
            raise ResolutionError(f"Failed to execute {self.command}: {e}", hostname=hostname) from e

        # Exit status is ignored: an unanswered echo still prints the resolved address
        output = result.stdout or ''
        address = parse_probe_output(output)
        if address is None:
            raw = output if output.strip() else (result.stderr or '')
            raise ResolutionError(
                f"Could not parse IP from {self.command} output: {raw.strip()}",
                hostname=hostname,
                output=raw,
            )

        try:
            ipaddress.ip_address(address.split('%', 1)[0])
        except ValueError as e:
            raise ResolutionError(
                f"Invalid IP from {self.command}: {address}",
                hostname=hostname,
                output=output,
            ) from e

        logger.debug(f"Resolved {hostname} -> {address}")
        return address

    def resolve_netloc(self, netloc, default_port=443):
        """Resolve 'host[:port]' to a list of (address, port) pairs"""
        host, port = split_netloc(netloc, default_port)
        try:
            ipaddress.ip_address(host)
            return [(host, port)]
        except ValueError:
            pass
        return [(self.resolve(host), port)]


def split_netloc(netloc, default_port):
    """Split 'host[:port]' (IPv6 literals in brackets) into (host, port)"""
    netloc = netloc.rsplit('@', 1)[-1]
    if netloc.startswith('['):
        host, _, rest = netloc[1:].partition(']')
        port = rest[1:] if rest.startswith(':') else ''
    elif netloc.count(':') == 1:
        host, port = netloc.split(':', 1)
    else:
        host, port = netloc, ''
    try:
        port = int(port) if port else default_port
    except ValueError:
        port = default_port
    return host, port
