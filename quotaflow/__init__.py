"""Hierarchical resource quota and usage tracking engine."""

__version__ = "0.1.0"
