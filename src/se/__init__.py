"""Surgical line-edit engine with a supervised execute/verify loop."""

__version__ = "0.1.0"
