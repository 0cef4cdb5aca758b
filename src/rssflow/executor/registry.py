"""Explicit workflow and activity registries.

A worker only executes what it was given at construction. Both
registries are validated eagerly, before any polling starts: duplicate
names, workflows referencing unregistered activities and schema
mismatches between a workflow's declared activity and the registered
executor all raise ConfigurationError.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from rssflow.core.errors import ConfigurationError
from rssflow.decorators import (
    _ACTIVITY_ATTR,
    ActivityDefinition,
    WorkflowDefinition,
    activity_definition,
    workflow_definition,
)

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """Registry mapping workflow type names to their definitions.

    Example:
        ```python
        workflows = WorkflowRegistry([summarize_rss_feed])
        workflows.register(other_workflow, name="other")
        ```
    """

    def __init__(
        self,
        workflows: Iterable[Callable[..., Any]] | Mapping[str, Callable[..., Any]] = (),
    ):
        self._definitions: dict[str, WorkflowDefinition] = {}
        if isinstance(workflows, Mapping):
            for name, fn in workflows.items():
                self.register(fn, name=name)
        else:
            for fn in workflows:
                self.register(fn)

    def register(self, fn: Callable[..., Any], name: str | None = None) -> WorkflowDefinition:
        """Register a workflow function, optionally under an explicit name."""
        definition = workflow_definition(fn)
        if name is not None and name != definition.name:
            definition = WorkflowDefinition(name=name, fn=definition.fn, activities=definition.activities)

        if definition.name in self._definitions:
            raise ConfigurationError(f"workflow {definition.name!r} registered twice")

        self._definitions[definition.name] = definition
        logger.debug(f"Registered workflow type: {definition.name}")
        return definition

    def get(self, name: str) -> WorkflowDefinition | None:
        return self._definitions.get(name)

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def definitions(self) -> list[WorkflowDefinition]:
        return list(self._definitions.values())

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


class ActivityRegistry:
    """Registry mapping activity names to their executors.

    Accepts plain functions, decorated functions, bound methods, and
    objects whose @activity methods are all registered at once:

        ```python
        activities = ActivityRegistry([PipelineActivities(reader, mailer, path)])
        ```
    """

    def __init__(self, activities: Iterable[Any] | Mapping[str, Callable[..., Any]] = ()):
        self._definitions: dict[str, ActivityDefinition] = {}
        if isinstance(activities, Mapping):
            for name, fn in activities.items():
                self.register(fn, name=name)
        else:
            for item in activities:
                if callable(item):
                    self.register(item)
                else:
                    self.register_instance(item)

    def register(self, fn: Callable[..., Any], name: str | None = None) -> ActivityDefinition:
        """Register one executor, optionally under an explicit name."""
        definition = activity_definition(fn).bind(fn)
        if name is not None and name != definition.name:
            definition = ActivityDefinition(
                name=name, fn=fn, schema=definition.schema, defaults=definition.defaults
            )

        if definition.name in self._definitions:
            raise ConfigurationError(f"activity {definition.name!r} registered twice")

        self._definitions[definition.name] = definition
        logger.debug(f"Registered activity: {definition.name} {definition.schema}")
        return definition

    def register_instance(self, instance: object) -> list[ActivityDefinition]:
        """Register every @activity method of `instance` as a bound executor."""
        registered = []
        for attr_name, member in inspect.getmembers(type(instance)):
            if getattr(member, _ACTIVITY_ATTR, None) is None:
                continue
            registered.append(self.register(getattr(instance, attr_name)))

        if not registered:
            raise ConfigurationError(
                f"{type(instance).__name__} has no @activity methods to register"
            )
        return registered

    def get(self, name: str) -> ActivityDefinition | None:
        return self._definitions.get(name)

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


def validate_registries(workflows: WorkflowRegistry, activities: ActivityRegistry) -> None:
    """
    Check that every activity a workflow declares is registered with the same schema.

    Raises:
        ConfigurationError: Listing every problem found
    """
    problems = []
    for definition in workflows.definitions():
        for name, schema in definition.activities:
            registered = activities.get(name)
            if registered is None:
                problems.append(
                    f"workflow {definition.name!r} references unregistered activity {name!r}"
                )
            elif registered.schema != schema:
                problems.append(
                    f"activity {name!r}: workflow {definition.name!r} expects {schema}, "
                    f"registered executor is {registered.schema}"
                )

    if problems:
        raise ConfigurationError("; ".join(problems))
