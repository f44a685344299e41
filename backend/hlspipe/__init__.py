"""Admission-controlled HLS transcoding pipeline."""

__version__ = "0.1.0"
