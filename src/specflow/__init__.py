"""Resumable, phase-based orchestration of agent-driven spec implementation."""

__version__ = "0.3.0"
