"""Top-level package for freeflow."""

__version__ = "0.1.0"

from . import config, errors, models, storage

__all__ = ["config", "errors", "models", "storage", "__version__"]
