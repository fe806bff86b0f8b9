"""Terminal feed reader with a staged, cancellable search pipeline."""

__version__ = "0.3.0"
