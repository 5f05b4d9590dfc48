"""Beads Console orchestration core.

Supervises coding-agent runs against a Beads issue tracker: task runs and
epic sequencing, session lifecycle and checkpoints, scoped memory retrieval
and live update fan-out.
"""

__version__ = "0.1.0"
