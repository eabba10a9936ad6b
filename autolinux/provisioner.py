"""
Provisioning orchestrator
Sequences download, unpack, normalization, environment configuration and script
generation for one distribution, reporting ProgressState values along the way.
"""

import os
import queue
import shutil
import logging
import threading

from .distro_catalog import install_target
from .env_config import EnvironmentConfigurator
from .errors import FilesystemError, ProvisionError
from .host_resolver import HostResolver
from .image_normalizer import ImageNormalizer
from .progress import ProgressState
from .scripts import ScriptGenerator
from .transport import ArchiveTransport, archive_filename_for
from .unpacker import ArchiveUnpacker

logger = logging.getLogger(__name__)


def _noop_progress(state):
    pass


class Provisioner:
    """Install a distribution into <base_dir>/<target> and write its start script"""

    def __init__(self, config, resolver=None, transport=None, unpacker=None,
                 normalizer=None, configurator=None, script_generator=None):
        self.config = config
        self.resolver = resolver or HostResolver(
            command=config.probe_command,
            count=config.probe_count,
            timeout=config.probe_timeout,
        )
        self.transport = transport or ArchiveTransport(
            resolver=self.resolver,
            connect_timeout=config.connect_timeout,
            chunk_size=config.chunk_size,
        )
        self.unpacker = unpacker or ArchiveUnpacker()
        self.normalizer = normalizer or ImageNormalizer(self.unpacker)
        self.configurator = configurator or EnvironmentConfigurator(
            self.resolver,
            config.nameservers,
            config.hosts_overrides,
        )
        self.script_generator = script_generator or ScriptGenerator(
            cleanup_command=config.cleanup_command,
            data_partition=config.data_partition,
            shared_storage=config.shared_storage,
            shm_size=config.shm_size,
        )

    def _prepare_install_dir(self, install_path):
        """Remove any previous install of the same identity and recreate the directory"""
        try:
            if os.path.lexists(install_path):
                logger.info(f"Removing previous installation: {install_path}")
                if os.path.isdir(install_path) and not os.path.islink(install_path):
                    shutil.rmtree(install_path)
                else:
                    os.remove(install_path)
            os.makedirs(install_path)
        except OSError as e:
            raise FilesystemError(f"Failed to prepare install directory {install_path}: {e}") from e

    def _run(self, distro, username, password, progress):
        target = install_target(distro)
        install_path = self.config.install_dir(target)
        start_script_path = self.config.start_script_path(target)
        logger.info(f"Installing {distro.display_name} as {target}")

        self._prepare_install_dir(install_path)

        logger.info("Step 1/5: Downloading root filesystem...")
        logger.info(f"Downloading from: {distro.source_url}")
        progress(ProgressState.downloading(0.0))
        archive_path = os.path.join(install_path, archive_filename_for(distro.source_url))
        self.transport.download(
            distro.source_url,
            archive_path,
            progress=lambda pct: progress(ProgressState.downloading(pct)),
        )

        logger.info("Step 2/5: Extracting archive...")
        progress(ProgressState.extracting())
        self.unpacker.unpack(archive_path, install_path)
        try:
            os.remove(archive_path)
        except OSError as e:
            raise FilesystemError(f"Failed to remove archive {archive_path}: {e}") from e

        logger.info("Step 3/5: Normalizing root filesystem...")
        self.normalizer.normalize(install_path)

        logger.info("Step 4/5: Generating config files...")
        progress(ProgressState.configuring())
        self.configurator.configure(install_path, distro.family)

        logger.info("Step 5/5: Generating startup scripts...")
        self.script_generator.write_start_script(start_script_path, install_path, distro.family)
        self.script_generator.write_setup_script(install_path, distro.family, username, password)
        logger.info("Scripts generated successfully.")

        logger.info(f"✓ Installation finished successfully at {install_path}")
        return start_script_path

    def install(self, distro, username, password, progress=None):
        """Provision distro; returns the start script path

        progress(state) receives every ProgressState, ending with Finished or
        Error. On failure the error is reported and re-raised as ProvisionError;
        partially written files are left in place.
        """
        progress = progress or _noop_progress
        progress(ProgressState.starting())

        try:
            start_script_path = self._run(distro, username, password, progress)
        except ProvisionError as e:
            logger.error(f"✗ Installation failed: {e}")
            progress(ProgressState.error(str(e)))
            raise
        except OSError as e:
            error = FilesystemError(str(e))
            logger.error(f"✗ Installation failed: {error}")
            progress(ProgressState.error(str(error)))
            raise error from e

        progress(ProgressState.finished(start_script_path))
        return start_script_path


class InstallWorker:
    """Run Provisioner.install on a background thread and queue its progress

    The consumer calls poll() at its own cadence. Download percentages are dropped
    when the queue is full; phase changes always get through.
    """

    def __init__(self, provisioner, maxsize=64):
        self.provisioner = provisioner
        self.events = queue.Queue(maxsize=maxsize)
        self.thread = None
        self.result = None
        self.error = None

    @property
    def running(self):
        return self.thread is not None and self.thread.is_alive()

    def _publish(self, state):
        if state.percent is not None and not state.is_terminal:
            try:
                self.events.put_nowait(state)
            except queue.Full:
                pass
        else:
            self.events.put(state)

    def _target(self, distro, username, password):
        try:
            self.result = self.provisioner.install(distro, username, password, progress=self._publish)
        except ProvisionError as e:
            self.error = e
        except Exception as e:
            # Anything else is a bug; keep the traceback and still end with an Error state
            logger.exception(f"Unexpected installer failure: {e}")
            self.error = e
            self._publish(ProgressState.error(f"{type(e).__name__}: {e}"))

    def start(self, distro, username, password):
        if self.running:
            raise RuntimeError("An installation is already in progress")
        self.result = None
        self.error = None
        self.thread = threading.Thread(
            target=self._target,
            args=(distro, username, password),
            name='autolinux-install',
            daemon=True,
        )
        self.thread.start()
        return self.thread

    def poll(self):
        """Return every pending ProgressState without blocking"""
        states = []
        while True:
            try:
                states.append(self.events.get_nowait())
            except queue.Empty:
                return states

    def join(self, timeout=None):
        if self.thread is not None:
            self.thread.join(timeout)
