"""Host gateway integration."""

from rotaguard.hooks.adapter import RotationHooks
from rotaguard.hooks.events import DegradationEvent, HookContext, StartupEvent

__all__ = ["DegradationEvent", "HookContext", "RotationHooks", "StartupEvent"]
