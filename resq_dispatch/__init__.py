"""
ResQ dispatch core.

Keeps an in-memory view of emergency incidents, units and dispatch routes in
sync with the hosted backend, merges realtime change events into it and runs
the preview/commit dispatch workflow.
"""

__version__ = "0.1.0"
