"""
Event schema registry and topic names.
"""

from .registry import (
    EVENT_REPORT_COMPLETED,
    EVENT_REPORT_REQUESTED,
    EVENT_REPORT_STATUS,
    TOPIC_EVENT_TYPES,
    TOPIC_PROCESSING_STATUS,
    TOPIC_REPORT_COMPLETED,
    TOPIC_REPORT_REQUESTS,
    DecodedEvent,
    EventRegistry,
    create_default_registry,
    excerpt,
)

__all__ = [
    "EVENT_REPORT_COMPLETED",
    "EVENT_REPORT_REQUESTED",
    "EVENT_REPORT_STATUS",
    "TOPIC_EVENT_TYPES",
    "TOPIC_PROCESSING_STATUS",
    "TOPIC_REPORT_COMPLETED",
    "TOPIC_REPORT_REQUESTS",
    "DecodedEvent",
    "EventRegistry",
    "create_default_registry",
    "excerpt",
]
