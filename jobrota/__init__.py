"""Jobrota: job scheduling and account rotation engine."""

__version__ = "0.1.0"
