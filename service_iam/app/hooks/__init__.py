from .dispatcher import HookDispatcher, HookEvent, HookEventKind, HookRegistration

__all__ = ["HookDispatcher", "HookEvent", "HookEventKind", "HookRegistration"]
