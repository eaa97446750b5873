"""CI build pipeline for Xcode projects."""

__version__ = "0.3.0"
