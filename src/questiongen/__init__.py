"""Resilient structured-output generation for dynamic questionnaires."""

__version__ = "0.1.0"
