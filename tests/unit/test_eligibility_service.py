from __future__ import annotations

from vectorsync.application.services.eligibility_service import EligibilityScanner


def _scanner(env, *, page_size: int = 2) -> EligibilityScanner:
    return EligibilityScanner(
        document_repo=env.documents,
        embedding_repo=env.embeddings,
        run_repo=env.runs,
        page_size=page_size,
    )


def _eligible_ids(scanner, pool, baseline) -> list[str]:
    return [item.document.id for item in scanner.iter_eligible(pool, baseline)]


def test_everything_is_eligible_without_baseline(bulk_env, scripted_provider, pool_factory) -> None:
    pool = pool_factory(scripted_provider())
    env = bulk_env(pool)
    for doc_id in ["a", "b", "c", "d", "e"]:
        env.documents.upsert("posts", doc_id, {"title": doc_id})
    scanner = _scanner(env)

    assert scanner.find_baseline("default") is None
    assert scanner.requires_full_rescan(pool, None)
    assert _eligible_ids(scanner, pool, None) == ["a", "b", "c", "d", "e"]


def test_only_changed_or_unembedded_documents_after_baseline(bulk_env, scripted_provider, pool_factory) -> None:
    pool = pool_factory(scripted_provider())
    env = bulk_env(pool)
    env.documents.upsert("posts", "a", {"title": "A"})
    env.documents.upsert("posts", "b", {"title": "B"})
    env.run_to_completion()

    env.documents.upsert("posts", "b", {"title": "B2"})
    env.documents.upsert("posts", "c", {"title": "C"})
    scanner = _scanner(env)
    baseline = scanner.find_baseline("default")

    assert baseline is not None
    assert not scanner.requires_full_rescan(pool, baseline)
    assert _eligible_ids(scanner, pool, baseline) == ["b", "c"]


def test_unchanged_document_missing_embedding_is_eligible(bulk_env, scripted_provider, pool_factory) -> None:
    pool = pool_factory(scripted_provider())
    env = bulk_env(pool)
    env.documents.upsert("posts", "a", {"title": "A"})
    env.documents.upsert("posts", "b", {"title": "B"})
    env.run_to_completion()
    env.embeddings.delete_for_document("default", "posts", "a")
    scanner = _scanner(env)

    assert _eligible_ids(scanner, pool, scanner.find_baseline("default")) == ["a"]


def test_version_change_forces_full_rescan(bulk_env, scripted_provider, pool_factory) -> None:
    provider = scripted_provider()
    env = bulk_env(pool_factory(provider, version="v1"))
    env.documents.upsert("posts", "a", {"title": "A"})
    env.documents.upsert("posts", "b", {"title": "B"})
    env.run_to_completion()
    bumped = pool_factory(provider, version="v2")
    scanner = _scanner(env)
    baseline = scanner.find_baseline("default")

    assert scanner.requires_full_rescan(bumped, baseline)
    assert _eligible_ids(scanner, bumped, baseline) == ["a", "b"]


def test_failed_runs_are_not_a_baseline(bulk_env, scripted_provider, pool_factory) -> None:
    env = bulk_env(pool_factory(scripted_provider(statuses={0: ["failed"]})))
    env.documents.upsert("posts", "a", {"title": "A"})
    run_id = env.run_to_completion()

    assert env.runs.get_by_id(run_id).status == "failed"
    assert _scanner(env).find_baseline("default") is None


def test_should_embed_sees_document_payload(bulk_env, scripted_provider, pool_factory) -> None:
    seen = []

    def should_embed(doc):
        seen.append(doc)
        return doc["id"] != "skip"

    pool = pool_factory(scripted_provider(), should_embed=should_embed)
    env = bulk_env(pool)
    env.documents.upsert("posts", "keep", {"title": "K"})
    env.documents.upsert("posts", "skip", {"title": "S"})

    assert _eligible_ids(_scanner(env, page_size=1), pool, None) == ["keep"]
    assert {doc["title"] for doc in seen} == {"K", "S"}
    assert all("updated_at" in doc for doc in seen)
