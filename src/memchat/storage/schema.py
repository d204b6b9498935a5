"""Index schema and query types for the document store."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Union

FLAT = "FLAT"
HNSW = "HNSW"

L2 = "L2"
COSINE = "COSINE"
IP = "IP"


@dataclass(frozen=True)
class TagField:
    name: str
    path: str = ""
    kind: str = "tag"

    @property
    def json_path(self) -> str:
        return self.path or f"$.{self.name}"


@dataclass(frozen=True)
class TextField:
    name: str
    path: str = ""
    kind: str = "text"

    @property
    def json_path(self) -> str:
        return self.path or f"$.{self.name}"


@dataclass(frozen=True)
class NumericField:
    name: str
    path: str = ""
    kind: str = "numeric"

    @property
    def json_path(self) -> str:
        return self.path or f"$.{self.name}"


@dataclass(frozen=True)
class VectorField:
    name: str
    dims: int
    algorithm: str = FLAT
    metric: str = L2
    path: str = ""
    hnsw_m: int = 16
    kind: str = "vector"

    def __post_init__(self) -> None:
        if self.dims <= 0:
            raise ValueError(f"vector field {self.name!r} needs a positive dimension")
        if self.algorithm not in (FLAT, HNSW):
            raise ValueError(f"unsupported vector algorithm: {self.algorithm}")
        if self.metric not in (L2, COSINE, IP):
            raise ValueError(f"unsupported distance metric: {self.metric}")

    @property
    def json_path(self) -> str:
        return self.path or f"$.{self.name}"


SchemaField = Union[TagField, TextField, NumericField, VectorField]

_FIELD_TYPES: dict[str, type] = {
    "tag": TagField,
    "text": TextField,
    "numeric": NumericField,
    "vector": VectorField,
}


@dataclass(frozen=True)
class IndexSchema:
    fields: tuple[SchemaField, ...]

    def field(self, name: str) -> SchemaField:
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(name)

    @property
    def vector_fields(self) -> list[VectorField]:
        return [f for f in self.fields if isinstance(f, VectorField)]

    def to_dict(self) -> list[dict[str, Any]]:
        return [asdict(f) for f in self.fields]

    @classmethod
    def from_dict(cls, data: list[dict[str, Any]]) -> IndexSchema:
        fields = []
        for raw in data:
            kind = raw.get("kind", "text")
            fields.append(_FIELD_TYPES[kind](**raw))
        return cls(fields=tuple(fields))


@dataclass(frozen=True)
class IndexDefinition:
    name: str
    prefix: str
    schema: IndexSchema


@dataclass(frozen=True)
class TagFilter:
    """Exact match of a tag field against any of ``values``."""

    field: str
    values: tuple[str, ...]
    # Also match documents that have no value for the field
    include_missing: bool = False

    @classmethod
    def of(cls, field: str, *values: str, include_missing: bool = False) -> TagFilter:
        return cls(field=field, values=tuple(values), include_missing=include_missing)


@dataclass
class KnnQuery:
    field: str
    vector: list[float]
    k: int = 1
    filters: list[TagFilter] = field(default_factory=list)
    return_fields: list[str] | None = None


@dataclass
class TagQuery:
    filters: list[TagFilter] = field(default_factory=list)
    offset: int = 0
    limit: int = 10_000
    return_fields: list[str] | None = None


@dataclass
class Document:
    key: str
    value: dict[str, Any]


@dataclass
class SearchResults:
    total: int
    documents: list[Document] = field(default_factory=list)
