"""Therapy Affect — multi-signal affect inference and smoothing."""

__version__ = "0.1.0"
