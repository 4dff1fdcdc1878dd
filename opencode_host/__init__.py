"""OpenCode host companion daemon."""

from .config import VERSION

__version__ = VERSION
