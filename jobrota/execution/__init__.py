"""Execution engines: the interface the worker pool calls and an HTTP adapter."""

from jobrota.execution.base import ExecutionEngine
from jobrota.execution.http_engine import HttpExecutionEngine

__all__ = ["ExecutionEngine", "HttpExecutionEngine"]
