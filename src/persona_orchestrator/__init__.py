"""Persona task orchestration: scheduler, pipelines and auto-review."""

__version__ = "0.1.0"
