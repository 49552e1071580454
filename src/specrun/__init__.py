"""Dependency-aware parallel spec execution for CLI coding agents."""

__version__ = "0.1.0"
