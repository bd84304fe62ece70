"""
Control loop.

Exports:
    ControlLoop: Daemon that resyncs and reconciles every key
    ReconcileKey: Cluster or group key
"""

from orchestrator_core.controller.loop import ControlLoop, ReconcileKey

__all__ = ["ControlLoop", "ReconcileKey"]
