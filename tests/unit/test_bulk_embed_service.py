from __future__ import annotations

import pytest

from vectorsync.application.services.bulk_embed_service import POLL_RUN_TASK, PREPARE_TASK
from vectorsync.application.services.completion_service import embedding_record_id
from vectorsync.core.errors import ConfigurationError
from vectorsync.core.ids import chunk_input_id
from vectorsync.domain.models.bulk_embedding import FailedChunk


def _paragraph_chunks(doc):
    return [{"text": part, "section": idx} for idx, part in enumerate(doc["body"].split("\n\n"))]


def test_first_run_embeds_every_document(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider(batch_size=2)
    env = bulk_env(pool_factory(provider))
    for doc_id, title in [("a", "Post A"), ("b", "Post B"), ("c", "Post C")]:
        env.documents.upsert("posts", doc_id, {"title": title})

    run_id = env.run_to_completion()

    run = env.runs.get_by_id(run_id)
    assert run is not None
    assert run.status == "succeeded"
    assert run.inputs == 3
    assert run.succeeded == 3
    assert run.failed == 0
    assert run.total_batches == 2
    assert run.completed_at is not None
    assert env.embeddings.count("default") == 3
    assert env.store.count_points("default") == 3
    assert env.metadata.count_for_run(run_id) == 0

    record = env.embeddings.get_by_key("default", "posts", "a", 0)
    assert record is not None
    assert record.chunk_text == "Post A"
    assert record.embedding_version == "v1"
    assert record.bulk_run_id == run_id
    assert record.id == embedding_record_id("default", chunk_input_id("posts", "a", 0))
    assert provider.released == ["fake-0", "fake-1"]
    assert provider.errors == []


def test_second_run_only_embeds_changed_documents(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider(batch_size=10)
    env = bulk_env(pool_factory(provider))
    env.documents.upsert("posts", "a", {"title": "Post A"})
    env.documents.upsert("posts", "b", {"title": "Post B"})
    first_run = env.run_to_completion()
    first_record = env.embeddings.get_by_key("default", "posts", "b", 0)

    env.documents.upsert("posts", "a", {"title": "Post A, revised"})
    second_run = env.run_to_completion()

    run = env.runs.get_by_id(second_run)
    assert run.status == "succeeded"
    assert run.inputs == 1
    assert provider.submitted[-1][1][0].text == "Post A, revised"

    revised = env.embeddings.get_by_key("default", "posts", "a", 0)
    untouched = env.embeddings.get_by_key("default", "posts", "b", 0)
    assert revised.chunk_text == "Post A, revised"
    assert revised.bulk_run_id == second_run
    assert untouched.bulk_run_id == first_run
    assert untouched.created_at == first_record.created_at
    assert env.embeddings.count("default") == 2


def test_rerun_without_changes_is_a_successful_noop(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider(batch_size=10)
    env = bulk_env(pool_factory(provider))
    env.documents.upsert("posts", "a", {"title": "Post A"})
    env.run_to_completion()

    run_id = env.run_to_completion()

    run = env.runs.get_by_id(run_id)
    assert run.status == "succeeded"
    assert run.inputs == 0
    assert run.total_batches == 0
    assert len(provider.submitted) == 1
    assert env.batches.list_for_run(run_id) == []


def test_version_bump_reembeds_everything(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider(batch_size=10)
    env = bulk_env(pool_factory(provider, version="v1"))
    env.documents.upsert("posts", "a", {"title": "Post A"})
    env.documents.upsert("posts", "b", {"title": "Post B"})
    env.run_to_completion()

    env.service.pools["default"] = pool_factory(provider, version="v2")
    run_id = env.run_to_completion()

    run = env.runs.get_by_id(run_id)
    assert run.embedding_version == "v2"
    assert run.inputs == 2
    records = env.embeddings.list_for_pool("default")
    assert {record.embedding_version for record in records} == {"v2"}
    assert {record.bulk_run_id for record in records} == {run_id}
    assert env.store.count_points("default") == 2


def test_shrinking_document_drops_stale_chunks(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider(batch_size=10)
    env = bulk_env(pool_factory(provider, to_chunks=_paragraph_chunks))
    env.documents.upsert("posts", "a", {"body": "one\n\ntwo\n\nthree"})
    env.run_to_completion()
    assert len(env.embeddings.list_for_document("default", "posts", "a")) == 3

    env.documents.upsert("posts", "a", {"body": "only one now"})
    run_id = env.run_to_completion()

    records = env.embeddings.list_for_document("default", "posts", "a")
    assert [(record.chunk_index, record.chunk_text) for record in records] == [(0, "only one now")]
    assert records[0].extension_fields == {"section": 0}
    assert records[0].bulk_run_id == run_id
    assert env.store.count_points("default") == 1


def test_conflicting_start_returns_active_run(bulk_env, scripted_provider, pool_factory) -> None:
    env = bulk_env(pool_factory(scripted_provider()))
    env.documents.upsert("posts", "a", {"title": "Post A"})

    first = env.service.start_bulk_embed("default")
    second = env.service.start_bulk_embed("default")

    assert not first.conflict
    assert second.conflict
    assert second.run_id == first.run_id
    assert second.status == "queued"
    assert "already running" in (second.message or "")
    assert len(env.runs.list_recent_runs(pool="default")) == 1


def test_pools_run_independently(bulk_env, scripted_provider, pool_factory) -> None:
    env = bulk_env(
        pool_factory(scripted_provider(), name="default"),
        pool_factory(scripted_provider(), name="archive"),
    )
    env.documents.upsert("posts", "a", {"title": "Post A"})

    first = env.service.start_bulk_embed("default")
    second = env.service.start_bulk_embed("archive")
    env.drain()

    assert not second.conflict
    assert env.runs.get_by_id(first.run_id).status == "succeeded"
    assert env.runs.get_by_id(second.run_id).status == "succeeded"
    assert env.embeddings.count("default") == 1
    assert env.embeddings.count("archive") == 1


def test_should_embed_filters_documents(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider()
    env = bulk_env(pool_factory(provider, should_embed=lambda doc: doc.get("published", False)))
    env.documents.upsert("posts", "draft", {"title": "Draft", "published": False})
    env.documents.upsert("posts", "live", {"title": "Live", "published": True})

    run_id = env.run_to_completion()

    assert env.runs.get_by_id(run_id).inputs == 1
    assert env.embeddings.get_by_key("default", "posts", "draft", 0) is None
    assert env.embeddings.get_by_key("default", "posts", "live", 0) is not None


def test_malformed_converter_output_fails_run_before_submission(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider()
    env = bulk_env(pool_factory(provider, to_chunks=lambda doc: [{"text": doc["title"]}, {"body": 1}]))
    env.documents.upsert("posts", "a", {"title": "Post A"})

    run_id = env.run_to_completion()

    run = env.runs.get_by_id(run_id)
    assert run.status == "failed"
    assert "Invalid indices: 1" in (run.error or "")
    assert provider.submitted == []
    assert env.batches.list_for_run(run_id) == []


def test_empty_pool_succeeds_without_batches(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider()
    env = bulk_env(pool_factory(provider))

    run_id = env.run_to_completion()

    run = env.runs.get_by_id(run_id)
    assert run.status == "succeeded"
    assert run.total_batches == 0
    assert provider.submitted == []


def test_running_batches_reschedule_polling(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider(statuses={0: ["queued", "running", "succeeded"]})
    env = bulk_env(pool_factory(provider))
    env.documents.upsert("posts", "a", {"title": "Post A"})

    result = env.service.start_bulk_embed("default")
    env.service.task_queue.run_next()
    env.service.task_queue.run_next()
    run = env.runs.get_by_id(result.run_id)
    assert run.status == "running"
    env.drain()

    run = env.runs.get_by_id(result.run_id)
    assert run.status == "succeeded"
    assert provider.polls["fake-0"] == 3
    poll_tasks = [task for task in env.service.task_queue.list_tasks() if task.task_name == POLL_RUN_TASK]
    assert len(poll_tasks) == 3
    assert all(task.status == "done" for task in poll_tasks)


def test_partial_failure_keeps_successful_batches(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider(batch_size=2, statuses={1: ["failed"]})
    env = bulk_env(pool_factory(provider))
    for doc_id in ["a", "b", "c", "d", "e"]:
        env.documents.upsert("posts", doc_id, {"title": f"Post {doc_id.upper()}"})

    run_id = env.run_to_completion()

    run = env.runs.get_by_id(run_id)
    batches = env.batches.list_for_run(run_id)
    assert [batch.input_count for batch in batches] == [2, 2, 1]
    assert [batch.status for batch in batches] == ["succeeded", "failed", "succeeded"]
    assert run.status == "succeeded"
    assert run.succeeded == 3
    assert run.failed == 2
    assert "1 batch(es) failed" in (run.error or "")
    assert env.embeddings.count("default") == 3
    assert env.metadata.count_for_batch(batches[1].id) == 2
    assert env.metadata.count_for_batch(batches[0].id) == 0
    assert provider.errors and provider.errors[0][0] == ["fake-0", "fake-1", "fake-2"]


def test_chunk_errors_are_recorded_on_the_run(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider(chunk_errors={chunk_input_id("posts", "b", 0)})
    env = bulk_env(pool_factory(provider))
    env.documents.upsert("posts", "a", {"title": "Post A"})
    env.documents.upsert("posts", "b", {"title": "Post B"})

    run_id = env.run_to_completion()

    run = env.runs.get_by_id(run_id)
    assert run.status == "succeeded"
    assert run.succeeded == 1
    assert run.failed == 1
    assert run.failed_chunk_data == [FailedChunk(collection="posts", document_id="b", chunk_index=0)]
    assert env.metadata.count_for_run(run_id) == 0
    assert provider.errors[0][2] == [FailedChunk(collection="posts", document_id="b", chunk_index=0)]


def test_cancel_run_cancels_open_batches(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider(statuses={0: ["running"]})
    env = bulk_env(pool_factory(provider))
    env.documents.upsert("posts", "a", {"title": "Post A"})
    result = env.service.start_bulk_embed("default")
    env.service.task_queue.run_next()

    canceled = env.service.cancel_run(result.run_id)
    env.drain(max_tasks=10)

    assert canceled.status == "canceled"
    run = env.runs.get_by_id(result.run_id)
    assert run.status == "canceled"
    batches = env.batches.list_for_run(result.run_id)
    assert [batch.status for batch in batches] == ["canceled"]
    assert batches[0].failed_count == 1
    assert env.metadata.count_for_run(result.run_id) == 0
    assert env.embeddings.count("default") == 0


def test_unknown_pool_is_a_configuration_error(bulk_env, scripted_provider, pool_factory) -> None:
    env = bulk_env(pool_factory(scripted_provider()))
    with pytest.raises(ConfigurationError, match="Unknown knowledge pool"):
        env.service.start_bulk_embed("missing")


def test_pool_without_provider_is_rejected(bulk_env, pool_factory) -> None:
    env = bulk_env(pool_factory(None))
    with pytest.raises(ConfigurationError, match="no bulk embedding provider"):
        env.service.start_bulk_embed("default")


def test_prepare_task_is_idempotent(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider()
    env = bulk_env(pool_factory(provider))
    env.documents.upsert("posts", "a", {"title": "Post A"})
    result = env.service.start_bulk_embed("default")
    env.service.prepare_run(result.run_id)

    again = env.service.prepare_run(result.run_id)

    assert again["skipped"] is True
    assert len(provider.submitted) == 1
    assert len(env.batches.list_for_run(result.run_id)) == 1
    names = [task.task_name for task in env.service.task_queue.list_tasks()]
    assert names.count(PREPARE_TASK) == 1
