"""loopwork: a resumable, persisted, multi-phase workflow engine."""

__version__ = "0.1.0"
