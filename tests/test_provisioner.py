#!/usr/bin/env python3
"""
End-to-end tests for the provisioning pipeline with a fake network
"""

import io
import os
import sys
import stat
import time
import shutil
import tarfile
import tempfile
import unittest
from unittest import mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from autolinux.config import AutoLinuxConfig
from autolinux.distro_catalog import DistroFamily, DistroSpec
from autolinux.errors import ExtractionError, NetworkError, ResolutionError
from autolinux.progress import Phase, ProgressState
from autolinux.provisioner import InstallWorker, Provisioner
from autolinux.transport import ArchiveTransport

ALPINE_URL = ('https://dl-cdn.alpinelinux.org/alpine/v3.22/releases/aarch64/'
              'alpine-minirootfs-3.22.2-aarch64.tar.gz')
ALPINE = DistroSpec('Alpine 3.22', 'release', '3.22.2', ALPINE_URL, DistroFamily.ALPINE)


def build_rootfs(path, wrapper=''):
    with tarfile.open(path, 'w:gz') as tar:
        for name, data in (('etc/os-release', b'ID=alpine\n'),
                           ('etc/passwd', b'root:x:0:0:root:/root:/bin/ash\n'),
                           ('bin/busybox', b'\x7fELF')):
            info = tarfile.TarInfo(os.path.join(wrapper, name) if wrapper else name)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))


class FakeTransport:
    """Copies a prepared archive instead of downloading"""

    def __init__(self, archive):
        self.archive = archive
        self.requests = []

    def download(self, url, dest_path, progress=None):
        self.requests.append((url, dest_path))
        shutil.copyfile(self.archive, dest_path)
        if progress is not None:
            progress(50.0)
            progress(100.0)
        return os.path.getsize(dest_path)


class NoResolver:
    def resolve(self, hostname):
        raise ResolutionError(f"no network in tests: {hostname}", hostname=hostname)

    def resolve_netloc(self, netloc, default_port=443):
        return [('192.0.2.10', default_port)]


class ProvisionerTestCase(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp(prefix='test_provisioner_')
        self.base_dir = os.path.join(self.test_dir, 'local')
        os.makedirs(self.base_dir)
        self.archive = os.path.join(self.test_dir, 'fixture.tar.gz')
        build_rootfs(self.archive)
        self.config = AutoLinuxConfig({'base_dir': self.base_dir, 'cleanup_command': 'true'}, environ={})
        self.states = []

    def tearDown(self):
        if os.path.exists(self.test_dir):
            shutil.rmtree(self.test_dir)

    def make_provisioner(self, transport=None):
        return Provisioner(self.config, resolver=NoResolver(), transport=transport or FakeTransport(self.archive))


class TestProvisioner(ProvisionerTestCase):

    def test_install_alpine(self):
        transport = FakeTransport(self.archive)
        script = self.make_provisioner(transport).install(ALPINE, 'alice', 'secret', self.states.append)

        tree = os.path.join(self.base_dir, 'alpine-release-3.22.2')
        self.assertEqual(script, os.path.join(self.base_dir, 'start-alpine-release-3.22.2.sh'))
        self.assertEqual(stat.S_IMODE(os.stat(script).st_mode), 0o755)
        self.assertEqual(transport.requests, [(ALPINE_URL, os.path.join(tree, 'rootfs.tar.gz'))])

        self.assertTrue(os.path.isfile(os.path.join(tree, 'etc', 'os-release')))
        self.assertTrue(os.path.isfile(os.path.join(tree, 'root', 'finalize_setup.sh')))
        self.assertTrue(os.path.isdir(os.path.join(tree, 'sdcard')))
        self.assertTrue(os.path.isdir(os.path.join(tree, 'dev', 'shm')))
        self.assertFalse(os.path.exists(os.path.join(tree, 'rootfs.tar.gz')))
        with open(os.path.join(tree, 'etc', 'resolv.conf')) as f:
            self.assertEqual(f.read(), 'nameserver 8.8.8.8\nnameserver 8.8.4.4\n')
        with open(script) as f:
            self.assertIn('run_chroot /bin/sh /root/finalize_setup.sh', f.read())

        self.assertEqual(self.states, [
            ProgressState.starting(),
            ProgressState.downloading(0.0),
            ProgressState.downloading(50.0),
            ProgressState.downloading(100.0),
            ProgressState.extracting(),
            ProgressState.configuring(),
            ProgressState.finished(script),
        ])
        self.assertEqual(self.states[-1].describe(),
                         f'Success! Run: sh {self.base_dir}/start-alpine-release-3.22.2.sh')

    def test_phases_never_go_backwards(self):
        self.make_provisioner().install(ALPINE, 'alice', 'secret', self.states.append)
        order = [Phase.STARTING, Phase.DOWNLOADING, Phase.EXTRACTING, Phase.CONFIGURING, Phase.FINISHED]
        positions = [order.index(s.phase) for s in self.states]
        self.assertEqual(positions, sorted(positions))
        self.assertEqual(sum(1 for s in self.states if s.is_terminal), 1)

    def test_previous_install_removed(self):
        stale = os.path.join(self.base_dir, 'alpine-release-3.22.2', 'stale.txt')
        os.makedirs(os.path.dirname(stale))
        with open(stale, 'w') as f:
            f.write('old')
        self.make_provisioner().install(ALPINE, 'alice', 'secret')
        self.assertFalse(os.path.exists(stale))
        self.assertTrue(os.path.isfile(os.path.join(self.base_dir, 'alpine-release-3.22.2', 'etc', 'os-release')))

    def test_wrapped_rootfs_flattened(self):
        build_rootfs(self.archive, wrapper='alpine-minirootfs')
        self.make_provisioner().install(ALPINE, 'alice', 'secret')
        tree = os.path.join(self.base_dir, 'alpine-release-3.22.2')
        self.assertTrue(os.path.isfile(os.path.join(tree, 'etc', 'os-release')))
        self.assertFalse(os.path.exists(os.path.join(tree, 'alpine-minirootfs')))

    def test_http_404(self):
        url = 'https://dl-cdn.alpinelinux.org/alpine/v3.22/releases/aarch64/missing.tar.gz'
        distro = ALPINE._replace(source_url=url)

        class FakeCurl:
            def __init__(self, *args, **kwargs):
                self.stdout = io.BytesIO(b'HTTP/1.1 404 Not Found\r\nContent-Length: 9\r\n\r\nnot found')
                self.stderr = io.BytesIO(b'')

            def wait(self):
                return 0

            def kill(self):
                pass

        transport = ArchiveTransport(resolver=NoResolver())
        with mock.patch('autolinux.transport.subprocess.Popen', FakeCurl):
            with self.assertRaises(NetworkError):
                self.make_provisioner(transport).install(distro, 'alice', 'secret', self.states.append)

        final = self.states[-1]
        self.assertEqual(final.phase, Phase.ERROR)
        self.assertIn('404', final.message)
        self.assertIn(url, final.message)
        self.assertFalse(os.path.exists(os.path.join(self.base_dir, 'start-alpine-release-3.22.2.sh')))

    def test_corrupt_download(self):
        with open(self.archive, 'wb') as f:
            f.write(b'<html>captive portal</html>')
        with self.assertRaises(ExtractionError):
            self.make_provisioner().install(ALPINE, 'alice', 'secret', self.states.append)
        self.assertEqual(self.states[-1].phase, Phase.ERROR)
        self.assertEqual(self.states[-2].phase, Phase.EXTRACTING)


class TestInstallWorker(ProvisionerTestCase):

    def _drain(self, worker, deadline=30):
        states = []
        end = time.monotonic() + deadline
        while time.monotonic() < end:
            states.extend(worker.poll())
            if states and states[-1].is_terminal:
                return states
            time.sleep(0.01)
        self.fail('worker did not finish')

    def test_background_install(self):
        worker = InstallWorker(self.make_provisioner())
        worker.start(ALPINE, 'alice', 'secret')
        states = self._drain(worker)
        worker.join(5)

        self.assertEqual(states[0], ProgressState.starting())
        self.assertEqual(states[-1].phase, Phase.FINISHED)
        self.assertEqual(worker.result, states[-1].start_script)
        self.assertIsNone(worker.error)
        self.assertFalse(worker.running)

    def test_background_failure(self):
        with open(self.archive, 'wb') as f:
            f.write(b'garbage')
        worker = InstallWorker(self.make_provisioner())
        worker.start(ALPINE, 'alice', 'secret')
        states = self._drain(worker)
        worker.join(5)

        self.assertEqual(states[-1].phase, Phase.ERROR)
        self.assertIsInstance(worker.error, ExtractionError)

    def test_unexpected_exception_reported(self):
        provisioner = self.make_provisioner()
        provisioner.install = mock.Mock(side_effect=RuntimeError('bug'))
        worker = InstallWorker(provisioner)
        worker.start(ALPINE, 'alice', 'secret')
        states = self._drain(worker)
        self.assertEqual(states[-1], ProgressState.error('RuntimeError: bug'))

    def test_full_queue_drops_percentages_only(self):
        worker = InstallWorker(self.make_provisioner(), maxsize=2)
        worker._publish(ProgressState.downloading(1))
        worker._publish(ProgressState.downloading(2))
        worker._publish(ProgressState.downloading(3))
        self.assertEqual(worker.poll(), [ProgressState.downloading(1), ProgressState.downloading(2)])
        self.assertEqual(worker.poll(), [])


if __name__ == '__main__':
    unittest.main()
