"""
hierarchy_services -- Package init and public API.

Responsibility:
    Outer layer over the kernel: the engine facade that wires kernel
    services from configuration, reference implementations of the external
    collaborators, and the bounded parallel dispatcher.

Architecture position:
    Dependency direction:
        hierarchy_services/ -> hierarchy_kernel/  (allowed)
        hierarchy_services/ -> hierarchy_config/  (allowed)
        hierarchy_kernel/   -> hierarchy_services/ (FORBIDDEN)
"""

from hierarchy_services.directory import InMemoryDirectory
from hierarchy_services.dispatcher import DispatchOutcome, ParallelDispatcher
from hierarchy_services.engine import HierarchyWorkflowEngine
from hierarchy_services.event_sinks import (
    EventDeliveryError,
    LoggingEventSink,
    RecordingEventSink,
)
from hierarchy_services.template_store import InMemoryTemplateStore

__all__ = [
    "DispatchOutcome",
    "EventDeliveryError",
    "HierarchyWorkflowEngine",
    "InMemoryDirectory",
    "InMemoryTemplateStore",
    "LoggingEventSink",
    "ParallelDispatcher",
    "RecordingEventSink",
]
