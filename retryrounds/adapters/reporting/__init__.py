"""Reporting adapters for the collapsed test event stream.

Implementations support multiple output channels:
- Stdout (terminal pretty-print with a closing summary)
- JSON Lines file (one object per event)
"""
