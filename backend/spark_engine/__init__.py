"""Spark workflow engine: generate, edit, lay out and execute vault workflows."""

__version__ = "0.1.0"
