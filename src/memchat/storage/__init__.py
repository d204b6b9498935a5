"""JSON document store, search indexes and the per-URL store pool."""

from memchat.storage.document_store import DocumentStore
from memchat.storage.pool import StorePool, parse_store_url
from memchat.storage.schema import (
    COSINE,
    FLAT,
    HNSW,
    IP,
    L2,
    Document,
    IndexDefinition,
    IndexSchema,
    KnnQuery,
    NumericField,
    SearchResults,
    TagField,
    TagFilter,
    TagQuery,
    TextField,
    VectorField,
)

__all__ = [
    "COSINE",
    "FLAT",
    "HNSW",
    "IP",
    "L2",
    "Document",
    "DocumentStore",
    "IndexDefinition",
    "IndexSchema",
    "KnnQuery",
    "NumericField",
    "SearchResults",
    "StorePool",
    "TagField",
    "TagFilter",
    "TagQuery",
    "TextField",
    "VectorField",
    "parse_store_url",
]
