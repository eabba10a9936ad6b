"""
Error types raised by the provisioning pipeline
Every stage raises a ProvisionError subclass; the message is shown to the user as-is
"""


class ProvisionError(Exception):
    """Base class for all pipeline failures"""


class NetworkError(ProvisionError):
    """Transport or HTTP failure, or a hostname that could not be resolved"""

    def __init__(self, message, url=None, status=None):
        super().__init__(message)
        self.url = url
        self.status = status


class ResolutionError(NetworkError):
    """Reachability probe failed or its output could not be parsed"""

    def __init__(self, message, hostname=None, output=''):
        super().__init__(message)
        self.hostname = hostname
        self.output = output


class ExtractionError(ProvisionError):
    """Archive could not be decoded or unpacked"""

    def __init__(self, message, archive_path=None):
        super().__init__(message)
        self.archive_path = archive_path


class ImageFormatError(ProvisionError):
    """Unpacked tree does not have the expected image layout"""


class NoLayerFoundError(ImageFormatError):
    """OCI layout without any usable layer blob"""


class FilesystemError(ProvisionError):
    """Directory creation/removal, rename or permission change failed"""


class ConfigurationError(ProvisionError):
    """Generated files or configuration could not be read or written"""
