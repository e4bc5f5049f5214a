"""Version information for sdprep."""

__version__ = "0.4.0"
