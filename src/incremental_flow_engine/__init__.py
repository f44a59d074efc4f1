"""Incremental data-indexing flow engine."""

from .core import *  # noqa: F401,F403
from .core import __all__ as _core_all
from . import components  # noqa: F401  (registers built-in components)

__version__ = "0.1.0"

__all__ = list(_core_all)
