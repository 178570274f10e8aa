"""Run unpacked browser extensions and reload them on change."""

__version__ = "0.1.0"
