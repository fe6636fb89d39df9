# Rotation Module - Scheduled and on-demand key rotation

from .engine import RotationEngine, RotationEvent, RotationHandler

__all__ = ["RotationEngine", "RotationEvent", "RotationHandler"]
