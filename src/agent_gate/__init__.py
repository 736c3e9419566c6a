"""Coordinated, crash-safe calls to slow external generative CLI processes."""

__version__ = "0.1.0"
