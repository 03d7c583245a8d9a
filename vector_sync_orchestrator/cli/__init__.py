"""
CLI package for Vector Sync Orchestrator

Provides command-line tools for validating configuration and job files and
inspecting the resource governor.
"""

from .main import main, cli

__all__ = ["main", "cli"]
