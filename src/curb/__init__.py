"""Unattended task loop for AI coding harnesses."""

__version__ = "0.4.0"
