"""Evaluation runner for editor-hosted coding agents."""

__version__ = "0.1.0"
