"""Orchestrator command-line interface."""
