"""
Checkflow - An async workflow orchestration engine.

Runs declarative workflow graphs node by node with timeouts, retries,
human checkpoints, cancellation and crash recovery from file checkpoints.
"""

__version__ = "1.0.0"
