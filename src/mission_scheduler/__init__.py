"""Persistent in-process mission scheduler for the research console."""

from __future__ import annotations

__version__ = "0.4.0"
