"""wfsx: access-controlled extraction of WFS layers to vector files."""

__version__ = "0.1.0"
