"""Execution-graph scheduling for multi-stage agent tasks."""

__version__ = "0.1.0"
