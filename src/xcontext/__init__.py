"""Assemble a deterministic, structured context document from a project tree."""

__version__ = "0.1.0"
