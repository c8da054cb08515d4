"""port-selector - stable per-directory TCP port allocation."""

__version__ = "0.1.0"
