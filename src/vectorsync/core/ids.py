from __future__ import annotations

import uuid


def new_uuid() -> str:
    """Generate a new UUID4 as a string."""
    return str(uuid.uuid4())


def deterministic_uuid(name: str, namespace: uuid.UUID = uuid.NAMESPACE_URL) -> str:
    """Generate a deterministic UUID5 from a stable name."""
    return str(uuid.uuid5(namespace, name))


def chunk_input_id(collection: str, doc_id: str, chunk_index: int) -> str:
    return f"{collection}:{doc_id}:{chunk_index}"


def parse_chunk_input_id(input_id: str) -> tuple[str, str, int] | None:
    """Split ``collection:doc_id:chunk_index``; doc ids may themselves contain colons."""
    collection, sep, rest = input_id.partition(":")
    if not sep:
        return None
    doc_id, sep, index_raw = rest.rpartition(":")
    if not sep or not doc_id:
        return None
    try:
        chunk_index = int(index_raw)
    except ValueError:
        return None
    return collection, doc_id, chunk_index
