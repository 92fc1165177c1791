"""Retry failed tests in bounded rounds while reporting a single run."""

__version__ = "0.1.0"
