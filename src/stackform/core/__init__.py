"""Core data: values, expressions, state records and state stores."""

from stackform.core.state import OutputValue, ResourceInstance, State
from stackform.core.store import InMemoryStateStore, LocalStateStore, StateStore
from stackform.core.values import Known, Unknown, Value

__all__ = [
    "InMemoryStateStore",
    "Known",
    "LocalStateStore",
    "OutputValue",
    "ResourceInstance",
    "State",
    "StateStore",
    "Unknown",
    "Value",
]
