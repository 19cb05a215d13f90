"""
pixpipe orchestrator

Drives a branching image-processing pipeline on an external engine reached
through a file-based bridge.
"""

from .engine import EngineState, ExecutionEngine, TerminalStatus

__all__ = ["EngineState", "ExecutionEngine", "TerminalStatus"]
