"""mambalite: resolve, fetch and link conda packages into environments."""

from .constants import Constants

__version__ = Constants.VERSION
