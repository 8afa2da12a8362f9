"""PhotoLabel: photo classification and object detection service."""

__version__ = "0.1.0"
