"""
Request-scoped tracking metadata.

TrackingContext is an immutable value passed explicitly down a call chain.
Every with_* method returns a new context layered over the current one, so a
context that has already been handed to other code never changes.
"""
import uuid
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


def new_trace_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class TrackingContext:
    trace_id: str = ""
    user_id: str = ""
    workflow: str = ""
    feature: str = ""
    dimensions: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Freeze a private copy so callers cannot mutate the dict they passed in
        object.__setattr__(self, 'dimensions', MappingProxyType(dict(self.dimensions)))

    def with_trace_id(self, trace_id: str) -> "TrackingContext":
        return replace(self, trace_id=trace_id)

    def with_new_trace_id(self) -> "TrackingContext":
        return replace(self, trace_id=new_trace_id())

    def with_user_id(self, user_id: str) -> "TrackingContext":
        return replace(self, user_id=user_id)

    def with_workflow(self, workflow: str) -> "TrackingContext":
        return replace(self, workflow=workflow)

    def with_feature(self, feature: str) -> "TrackingContext":
        return replace(self, feature=feature)

    def with_dimensions(self, dimensions: Mapping[str, Any]) -> "TrackingContext":
        """Layer custom dimensions over the existing ones, overriding by key."""
        merged = dict(self.dimensions)
        merged.update(dimensions or {})
        return replace(self, dimensions=merged)


def get_trace_id(ctx: Optional[TrackingContext]) -> str:
    """Trace id carried by ctx, or a freshly generated one."""
    if ctx is not None and ctx.trace_id:
        return ctx.trace_id
    return new_trace_id()


def get_user_id(ctx: Optional[TrackingContext]) -> str:
    if ctx is None:
        return ""
    return ctx.user_id


def get_dimensions(ctx: Optional[TrackingContext]) -> Dict[str, Any]:
    """
    Flatten a context into one dimension mapping.

    Custom dimensions come first; user_id, workflow and feature are overlaid
    when set. The trace id is a first-class record field and never appears
    here.
    """
    dimensions: Dict[str, Any] = {}
    if ctx is None:
        return dimensions

    dimensions.update(ctx.dimensions)

    if ctx.user_id:
        dimensions['user_id'] = ctx.user_id
    if ctx.workflow:
        dimensions['workflow'] = ctx.workflow
    if ctx.feature:
        dimensions['feature'] = ctx.feature

    return dimensions
