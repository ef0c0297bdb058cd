"""chatrelay — chat relay between callers and a pluggable AI backend."""

__version__ = "0.3.0"
