"""Tests for decorators, registries and startup validation."""

import pytest

from rssflow import ConfigurationError, Orchestrator, TaskQueue, Worker
from rssflow.decorators import activity, activity_definition, workflow, workflow_definition
from rssflow.executor.registry import ActivityRegistry, WorkflowRegistry, validate_registries
from rssflow.models import RetryPolicy
from rssflow.pipeline import PipelineActivities, summarize_rss_feed
from rssflow.storage import InMemoryExecutionLog


@activity(name="fetch", start_to_close_timeout=5.0, retry_policy=RetryPolicy.STANDARD)
async def fetch(urls: list[str]) -> list[str]:
    return urls


async def fetch_one(url: str) -> str:
    return url


@activity
def shout(text: str) -> str:
    return text.upper()


@workflow(activities=[fetch, shout])
async def fetch_and_shout(ctx, urls: list[str]) -> str:
    titles = await ctx.call_activity(fetch, urls)
    return await ctx.call_activity(shout, " ".join(titles))


class NoActivities:
    def helper(self) -> None:
        pass


class MixedMethods:
    @activity(name="renamed")
    async def decorated(self, x: int) -> int:
        return x

    @activity
    def plain_sync(self) -> str:
        return "sync"

    def helper(self) -> None:
        pass


def test_activity_decorator_attaches_definition():
    definition = activity_definition(fetch)

    assert definition.name == "fetch"
    assert definition.defaults.start_to_close_timeout == 5.0
    assert definition.defaults.retry_policy == RetryPolicy.STANDARD
    assert str(definition.schema) == "(urls: list[str]) -> list[str]"
    assert definition.is_async
    assert not activity_definition(shout).is_async


def test_undecorated_callable_is_named_after_function():
    assert activity_definition(fetch_one).name == "fetch_one"


def test_workflow_decorator_records_declared_activities():
    definition = workflow_definition(fetch_and_shout)

    assert definition.name == "fetch_and_shout"
    assert definition.declares("fetch")
    assert definition.declares("shout")
    assert not definition.declares("fetch_one")


def test_workflow_must_be_async():
    with pytest.raises(TypeError):

        @workflow
        def not_async(ctx):
            return None


def test_method_schema_matches_bound_executor():
    """The unbound method a workflow declares matches the bound method a worker registers."""
    registry = ActivityRegistry([PipelineActivities(reader=None)])

    for name in ["fetch_feeds", "extract_keywords", "generate_report", "notify_by_email"]:
        declared = activity_definition(getattr(PipelineActivities, name)).schema
        assert registry.get(name).schema == declared


def test_register_instance_registers_every_activity_method():
    registry = ActivityRegistry([PipelineActivities(reader=None)])

    assert registry.names() == [
        "extract_keywords",
        "fetch_feeds",
        "generate_report",
        "notify_by_email",
        "summarize_keywords",
    ]


def test_register_instance_picks_only_decorated_methods():
    instance = MixedMethods()

    registry = ActivityRegistry([instance])

    assert registry.names() == ["plain_sync", "renamed"]
    assert registry.get("renamed").fn == instance.decorated
    assert registry.get("helper") is None


def test_instance_without_activities_is_rejected():
    with pytest.raises(ConfigurationError):
        ActivityRegistry([NoActivities()])


def test_duplicate_names_are_rejected():
    with pytest.raises(ConfigurationError, match="registered twice"):
        ActivityRegistry([fetch, fetch])

    with pytest.raises(ConfigurationError, match="registered twice"):
        WorkflowRegistry([fetch_and_shout, fetch_and_shout])


def test_mapping_registers_under_explicit_names():
    registry = WorkflowRegistry({"pipeline": summarize_rss_feed})

    assert "pipeline" in registry
    assert registry.get("summarize_rss_feed") is None


def test_validation_reports_unregistered_activity():
    workflows = WorkflowRegistry([fetch_and_shout])
    activities = ActivityRegistry([fetch])

    with pytest.raises(ConfigurationError, match="unregistered activity 'shout'"):
        validate_registries(workflows, activities)


def test_validation_reports_schema_mismatch():
    workflows = WorkflowRegistry([fetch_and_shout])
    activities = ActivityRegistry({"fetch": fetch_one, "shout": shout})

    with pytest.raises(ConfigurationError, match="activity 'fetch'"):
        validate_registries(workflows, activities)


def test_consistent_registries_validate():
    validate_registries(WorkflowRegistry([fetch_and_shout]), ActivityRegistry([fetch, shout]))


@pytest.mark.asyncio
async def test_worker_validates_before_polling():
    storage = InMemoryExecutionLog()
    orchestrator = Orchestrator(storage)

    with pytest.raises(ConfigurationError):
        Worker(
            orchestrator,
            TaskQueue(storage, "q"),
            workflows=[summarize_rss_feed],
            activities=[fetch, shout],
        )

    # Nothing was polled or enqueued
    assert await storage.queue_depth("q") == 0


@pytest.mark.asyncio
async def test_worker_accepts_pipeline_registration():
    storage = InMemoryExecutionLog()
    worker = Worker(
        Orchestrator(storage),
        TaskQueue(storage, "rss-summary"),
        workflows=[summarize_rss_feed],
        activities=[PipelineActivities(reader=None)],
    )

    assert worker.worker_id.startswith("worker-")
