"""
nodeflow - An async execution core for visual workflow graphs.

Runs directed acyclic graphs of typed nodes in concurrency-bounded waves,
with per-node timeout and retry, a validated status state machine and
snapshot persistence hooks.
"""

__version__ = "1.0.0"
