"""Crowd-sourced street parking availability backend."""

__version__ = "0.1.0"
