"""Conductor - dependency-graph workflows dispatched to CLI agents."""

__version__ = "0.1.0"
