"""
Services for recurrence firing, administration and side effects.
"""

from .instance_generator import InstanceGenerator
from .notifier import EventBus, get_event_bus
from .side_effects import SideEffectQueue, SideEffectType, get_side_effect_queue
from .trigger_engine import TriggerEngine, get_trigger_engine
from .recurrence_service import RecurrenceService, get_recurrence_service

__all__ = [
    "InstanceGenerator",
    "EventBus",
    "get_event_bus",
    "SideEffectQueue",
    "SideEffectType",
    "get_side_effect_queue",
    "TriggerEngine",
    "get_trigger_engine",
    "RecurrenceService",
    "get_recurrence_service",
]
