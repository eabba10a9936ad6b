"""
Progress states reported by the provisioning pipeline
"""

from enum import Enum


class Phase(Enum):
    STARTING = 'starting'
    DOWNLOADING = 'downloading'
    EXTRACTING = 'extracting'
    CONFIGURING = 'configuring'
    FINISHED = 'finished'
    ERROR = 'error'


# Order in which non-error phases may follow each other
PHASE_ORDER = [
    Phase.STARTING,
    Phase.DOWNLOADING,
    Phase.EXTRACTING,
    Phase.CONFIGURING,
    Phase.FINISHED,
]


class ProgressState:
    """A single immutable progress report"""

    __slots__ = ('phase', 'percent', 'start_script', 'message')

    def __init__(self, phase, percent=None, start_script=None, message=None):
        object.__setattr__(self, 'phase', phase)
        object.__setattr__(self, 'percent', percent)
        object.__setattr__(self, 'start_script', start_script)
        object.__setattr__(self, 'message', message)

    def __setattr__(self, name, value):
        raise AttributeError('ProgressState is immutable')

    @classmethod
    def starting(cls):
        return cls(Phase.STARTING)

    @classmethod
    def downloading(cls, percent):
        # Clamp: a server may send more bytes than Content-Length announced
        percent = max(0.0, min(100.0, float(percent)))
        return cls(Phase.DOWNLOADING, percent=percent)

    @classmethod
    def extracting(cls):
        return cls(Phase.EXTRACTING)

    @classmethod
    def configuring(cls):
        return cls(Phase.CONFIGURING)

    @classmethod
    def finished(cls, start_script):
        return cls(Phase.FINISHED, start_script=str(start_script))

    @classmethod
    def error(cls, message):
        return cls(Phase.ERROR, message=str(message))

    @property
    def is_terminal(self):
        return self.phase in (Phase.FINISHED, Phase.ERROR)

    def describe(self):
        """Human-readable status line"""
        if self.phase == Phase.STARTING:
            return 'Initializing...'
        if self.phase == Phase.DOWNLOADING:
            if self.percent is None:
                return 'Downloading Rootfs...'
            return f'Downloading Rootfs... {self.percent:.1f}%'
        if self.phase == Phase.EXTRACTING:
            return 'Extracting Archive (This takes CPU)...'
        if self.phase == Phase.CONFIGURING:
            return 'Configuring Environment...'
        if self.phase == Phase.FINISHED:
            return f'Success! Run: sh {self.start_script}'
        return f'ERROR: {self.message}'

    def __eq__(self, other):
        if not isinstance(other, ProgressState):
            return NotImplemented
        return (self.phase, self.percent, self.start_script, self.message) == \
            (other.phase, other.percent, other.start_script, other.message)

    def __hash__(self):
        return hash((self.phase, self.percent, self.start_script, self.message))

    def __repr__(self):
        if self.phase == Phase.DOWNLOADING:
            return f'ProgressState(DOWNLOADING, percent={self.percent})'
        if self.phase == Phase.FINISHED:
            return f'ProgressState(FINISHED, start_script={self.start_script!r})'
        if self.phase == Phase.ERROR:
            return f'ProgressState(ERROR, message={self.message!r})'
        return f'ProgressState({self.phase.name})'
