"""
HTTP(S) download of root filesystem archives with curl
Hostnames are resolved through HostResolver and pinned with --resolve, so curl never
needs the system resolver; TLS still validates against the real hostname.
"""

import os
import logging
import subprocess
from http import HTTPStatus
from urllib.parse import urljoin, urlparse

from .errors import NetworkError, ResolutionError
from .host_resolver import split_netloc

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {'http': 80, 'https': 443}
MAX_REDIRECTS = 10


def archive_filename_for(url):
    """Temporary archive name inferred from the URL suffix"""
    path = urlparse(url).path
    return 'rootfs.tar.xz' if path.endswith('.xz') else 'rootfs.tar.gz'


def _reason_phrase(status_code, reason):
    if reason:
        return reason
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return 'Unknown Status'


class ResponseHead:
    """Status line and headers of the final response block"""

    def __init__(self, status_code, reason, headers):
        self.status_code = status_code
        self.reason = reason
        self.headers = headers

    @property
    def content_length(self):
        try:
            return int(self.headers.get('content-length', ''))
        except ValueError:
            return 0


def read_response_head(stream):
    """Parse curl -i header blocks from a binary stream, skipping 1xx interim responses

    Returns None if the stream ends before a status line.
    """
    while True:
        status_line = stream.readline()
        if not status_line:
            return None
        status_line = status_line.decode('iso-8859-1').strip()
        if not status_line:
            continue

        parts = status_line.split(None, 2)
        try:
            status_code = int(parts[1])
        except (IndexError, ValueError):
            status_code = 0
        reason = parts[2] if len(parts) > 2 else ''

        headers = {}
        while True:
            line = stream.readline()
            if not line:
                break
            line = line.decode('iso-8859-1').rstrip('\r\n')
            if not line:
                break
            if ':' in line:
                key, value = line.split(':', 1)
                headers[key.strip().lower()] = value.strip()

        if 100 <= status_code < 200:
            continue
        return ResponseHead(status_code, reason, headers)


class ArchiveTransport:
    """Stream a URL to a file with progress reporting"""

    def __init__(self, resolver=None, connect_timeout=30, chunk_size=65536,
                 user_agent='autolinux/1.0', curl='curl'):
        self.resolver = resolver
        self.connect_timeout = connect_timeout
        self.chunk_size = chunk_size
        self.user_agent = user_agent
        self.curl = curl

    def _build_command(self, url):
        cmd = [
            self.curl, '-sS', '-i',
            '--connect-timeout', str(self.connect_timeout),
            '-H', f'User-Agent: {self.user_agent}',
        ]

        parsed = urlparse(url)
        if parsed.scheme not in DEFAULT_PORTS:
            raise NetworkError(f"Network Error: unsupported URL scheme '{parsed.scheme}' - URL: {url}", url=url)

        if self.resolver is not None:
            host, port = split_netloc(parsed.netloc, DEFAULT_PORTS[parsed.scheme])
            for address, resolved_port in self.resolver.resolve_netloc(f'{host}:{port}', port):
                if ':' in address:
                    address = f'[{address}]'
                cmd.extend(['--resolve', f'{host}:{resolved_port}:{address}'])

        cmd.append(url)
        return cmd

    def _spawn(self, cmd):
        logger.debug(f"Executing command: {' '.join(cmd)}")
        try:
            return subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            raise NetworkError(f"Network Error: failed to execute {self.curl}: {e}", url=cmd[-1]) from e

    @staticmethod
    def _finish(proc):
        """Drain the process and return (returncode, stderr text)"""
        try:
            proc.stdout.read()
        except (OSError, ValueError):
            pass
        stderr = proc.stderr.read() if proc.stderr else b''
        returncode = proc.wait()
        return returncode, stderr.decode('utf-8', errors='replace').strip()

    def download(self, url, dest_path, progress=None):
        """Download url into dest_path; returns the number of body bytes written

        progress(percent) is called per chunk only when Content-Length is known.
        """
        current_url = url

        for _ in range(MAX_REDIRECTS + 1):
            try:
                cmd = self._build_command(current_url)
            except ResolutionError as e:
                raise NetworkError(f"Network Error: {e} - URL: {current_url}", url=current_url) from e
            proc = self._spawn(cmd)
            head = read_response_head(proc.stdout)

            if head is None:
                returncode, stderr = self._finish(proc)
                cause = stderr or f'curl exited with code {returncode}'
                raise NetworkError(f"Network Error: {cause} - URL: {current_url}", url=current_url)

            if 300 <= head.status_code < 400 and head.headers.get('location'):
                self._finish(proc)
                next_url = urljoin(current_url, head.headers['location'])
                logger.info(f"Redirected ({head.status_code}) to: {next_url}")
                current_url = next_url
                continue

            if not 200 <= head.status_code < 300:
                self._finish(proc)
                reason = _reason_phrase(head.status_code, head.reason)
                raise NetworkError(
                    f"HTTP Error {head.status_code}: {reason} - URL: {current_url}",
                    url=current_url,
                    status=head.status_code,
                )

            return self._stream_body(proc, head, current_url, dest_path, progress)

        raise NetworkError(f"Network Error: too many redirects - URL: {url}", url=url)

    def _stream_body(self, proc, head, url, dest_path, progress):
        total = head.content_length
        logger.info(f"Content-Length: {total} bytes")

        downloaded = 0
        try:
            with open(dest_path, 'wb') as f:
                while True:
                    chunk = proc.stdout.read(self.chunk_size)
                    if not chunk:
                        break
                    f.write(chunk)
                    downloaded += len(chunk)
                    if total > 0 and progress is not None:
                        progress(downloaded / total * 100.0)
        except OSError:
            proc.kill()
            self._finish(proc)
            raise

        returncode, stderr = self._finish(proc)
        if returncode != 0:
            cause = stderr or f'curl exited with code {returncode}'
            raise NetworkError(f"Network Error: {cause} - URL: {url}", url=url)

        logger.info(f"Download complete. Saved {downloaded} bytes to {os.path.basename(dest_path)}")
        return downloaded
