"""
Process-wide logging sink
configure_logging() is called once by the command-line entry point; library modules
only ever use logging.getLogger(__name__).
"""

import os
import sys
import logging
from pathlib import Path

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
FALLBACK_HOME = '/data/local/tmp'

_HANDLER_MARK = '_autolinux_handler'


def get_log_path():
    """Default debug log location"""
    home = os.environ.get('HOME') or FALLBACK_HOME
    return os.path.join(home, '.local', 'share', 'auto-linux', 'debug.logs')


def _install_excepthook():
    previous_hook = sys.excepthook

    def log_fatal(exc_type, exc_value, exc_tb):
        if not issubclass(exc_type, KeyboardInterrupt):
            logging.getLogger('autolinux').critical(
                f"Fatal crash: {exc_type.__name__}: {exc_value}",
                exc_info=(exc_type, exc_value, exc_tb),
            )
        previous_hook(exc_type, exc_value, exc_tb)

    log_fatal._autolinux_hook = True
    if not getattr(previous_hook, '_autolinux_hook', False):
        sys.excepthook = log_fatal


def configure_logging(log_path=None, verbose=False, console=True):
    """Attach file and console handlers to the root logger

    Returns the log file path actually in use, or None when the file could not
    be opened.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    existing = [h for h in root.handlers if getattr(h, _HANDLER_MARK, False)]
    if existing:
        for handler in existing:
            if isinstance(handler, logging.FileHandler):
                return handler.baseFilename
        return None

    formatter = logging.Formatter(LOG_FORMAT)
    log_path = log_path or get_log_path()
    chosen_path = None
    file_error = None

    try:
        Path(os.path.dirname(log_path) or '.').mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        setattr(file_handler, _HANDLER_MARK, True)
        root.addHandler(file_handler)
        chosen_path = log_path
    except OSError as e:
        file_error = e

    if console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        setattr(stream_handler, _HANDLER_MARK, True)
        root.addHandler(stream_handler)

    _install_excepthook()

    logger = logging.getLogger(__name__)
    if file_error is not None:
        logger.warning(f"Unable to open log file {log_path}: {file_error}")
    logger.debug("=== APPLICATION STARTED ===")
    logger.debug(f"Log Path: {chosen_path}")
    return chosen_path
