"""SD/USB card preparation with a guarded format pipeline."""

from .__version__ import __version__


__all__ = ["__version__"]
