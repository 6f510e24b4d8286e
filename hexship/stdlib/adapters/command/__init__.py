"""Subprocess-backed stage adapter."""

from hexship.stdlib.adapters.command.command_stage import CommandStageAdapter

__all__ = ["CommandStageAdapter"]
