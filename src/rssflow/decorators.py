"""
Decorators declaring workflows and activities.

@activity and @workflow only attach metadata to the decorated function;
they do not register anything globally. Registration happens through the
explicit maps passed to Worker, which validates them before polling.

Each activity has a stable name and a schema derived from its signature
(parameter names, kinds and annotations plus the return annotation).
Workflows declare the activities they call, so a worker can detect at
startup that a registered executor does not match what a workflow
expects.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

from rssflow.models import ActivityOptions, RetryPolicy

__all__ = [
    "ActivityDefinition",
    "ActivitySchema",
    "WorkflowDefinition",
    "activity",
    "activity_definition",
    "workflow",
    "workflow_definition",
]

F = TypeVar("F", bound=Callable[..., Any])

_ACTIVITY_ATTR = "_rssflow_activity"
_WORKFLOW_ATTR = "_rssflow_workflow"


@dataclass(frozen=True)
class ActivitySchema:
    """Input/output shape of an activity, compared between caller and executor."""

    parameters: tuple[tuple[str, str, str], ...]
    """(name, kind, annotation) per parameter, receiver excluded."""

    returns: str

    @classmethod
    def of(cls, fn: Callable[..., Any]) -> ActivitySchema:
        """Derive the schema from a function or bound method signature."""
        signature = inspect.signature(fn)
        params = list(signature.parameters.values())
        if params and params[0].name in ("self", "cls") and not inspect.ismethod(fn):
            params = params[1:]
        return cls(
            parameters=tuple(
                (p.name, p.kind.name, _annotation_text(p.annotation)) for p in params
            ),
            returns=_annotation_text(signature.return_annotation),
        )

    def __str__(self) -> str:
        args = ", ".join(f"{name}: {ann}" for name, _, ann in self.parameters)
        return f"({args}) -> {self.returns}"


def _annotation_text(annotation: Any) -> str:
    if annotation is inspect.Parameter.empty:
        return "Any"
    if isinstance(annotation, str):
        return annotation
    return inspect.formatannotation(annotation)


@dataclass(frozen=True)
class ActivityDefinition:
    """Metadata attached by @activity."""

    name: str
    fn: Callable[..., Any]
    schema: ActivitySchema
    defaults: ActivityOptions = field(default_factory=ActivityOptions)

    @property
    def is_async(self) -> bool:
        """True if calling fn returns an awaitable."""
        return inspect.iscoroutinefunction(self.fn)

    def bind(self, fn: Callable[..., Any]) -> ActivityDefinition:
        """Return a copy whose executor is `fn` (e.g. a bound method)."""
        return replace(self, fn=fn)


@dataclass(frozen=True)
class WorkflowDefinition:
    """Metadata attached by @workflow."""

    name: str
    fn: Callable[..., Any]
    activities: tuple[tuple[str, ActivitySchema], ...] = ()
    """(name, schema) for every activity the workflow declares it calls."""

    def declares(self, activity_name: str) -> bool:
        """Check if the workflow declared this activity."""
        return any(name == activity_name for name, _ in self.activities)


def activity(
    func: F | None = None,
    *,
    name: str | None = None,
    start_to_close_timeout: float | None = None,
    retry_policy: RetryPolicy | None = None,
) -> F:
    """
    Mark a function or method as an activity.

    Args:
        func: The function to decorate
        name: Stable registration name (defaults to the function name)
        start_to_close_timeout: Default per-attempt timeout in seconds
        retry_policy: Default retry policy for this activity type

    Example:
        ```python
        class PipelineActivities:
            @activity(name="fetch_feeds", retry_policy=RetryPolicy.STANDARD)
            async def fetch_feeds(self, urls: list[str]) -> list[str]:
                ...
        ```
    """

    def decorator(f: F) -> F:
        definition = ActivityDefinition(
            name=name or f.__name__,
            fn=f,
            schema=ActivitySchema.of(f),
            defaults=ActivityOptions(
                start_to_close_timeout=start_to_close_timeout,
                retry_policy=retry_policy,
            ),
        )
        setattr(f, _ACTIVITY_ATTR, definition)
        return f

    if func is not None:
        return decorator(func)
    return decorator  # type: ignore


def workflow(
    func: F | None = None,
    *,
    name: str | None = None,
    activities: Sequence[Callable[..., Any]] = (),
) -> F:
    """
    Mark an async function as a workflow.

    The function receives a WorkflowContext as its first argument, followed
    by the arguments given to start_workflow(). It must be deterministic:
    anything time-, random- or I/O-dependent goes through the context.

    Args:
        func: The function to decorate
        name: Stable registration name (defaults to the function name)
        activities: Activities the workflow calls; checked against the
            worker's activity registry at startup

    Example:
        ```python
        @workflow(name="summarize", activities=[PipelineActivities.fetch_feeds])
        async def summarize(ctx: WorkflowContext, urls: list[str]) -> str:
            titles = await ctx.call_activity(PipelineActivities.fetch_feeds, urls)
            ...
        ```
    """

    def decorator(f: F) -> F:
        if not inspect.iscoroutinefunction(f):
            raise TypeError(f"workflow {f.__qualname__} must be an async function")
        refs = []
        for ref in activities:
            definition = activity_definition(ref)
            refs.append((definition.name, definition.schema))
        setattr(
            f,
            _WORKFLOW_ATTR,
            WorkflowDefinition(name=name or f.__name__, fn=f, activities=tuple(refs)),
        )
        return f

    if func is not None:
        return decorator(func)
    return decorator  # type: ignore


def activity_definition(fn: Callable[..., Any]) -> ActivityDefinition:
    """
    Get the activity definition for a function, decorated or not.

    Undecorated callables are treated as activities named after the
    function, with no default options.
    """
    definition = getattr(fn, _ACTIVITY_ATTR, None)
    if definition is None:
        return ActivityDefinition(name=fn.__name__, fn=fn, schema=ActivitySchema.of(fn))
    return definition


def workflow_definition(fn: Callable[..., Any]) -> WorkflowDefinition:
    """Get the workflow definition for a function, decorated or not."""
    definition = getattr(fn, _WORKFLOW_ATTR, None)
    if definition is None:
        if not inspect.iscoroutinefunction(fn):
            raise TypeError(f"workflow {fn!r} must be an async function")
        return WorkflowDefinition(name=fn.__name__, fn=fn)
    return definition
