"""Personal research library persistence."""

__version__ = "0.1.0"
