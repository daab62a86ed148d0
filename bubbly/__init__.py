"""Bubbly: multi-room chat server with friends, groups and persisted history."""

__version__ = "0.1.0"
