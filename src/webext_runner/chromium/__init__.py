"""Chromium support: launcher and reload-control channel."""
