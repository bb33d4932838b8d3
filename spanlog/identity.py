"""Span identity: row ids, span ids and parent linkage.

All ids are generated client side when a span is constructed, so children
can be created before anything about the parent reaches the server.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class ParentSpanIds:
    span_id: str
    root_span_id: str


@dataclass(frozen=True)
class SpanIdentity:
    """``(id, span_id, root_span_id, span_parents)`` of one span instance.

    ``id`` is the row id (caller-assigned or generated); ``span_id`` is unique
    per span object. A span is a root exactly when it has no parents, in which
    case ``root_span_id == span_id``.
    """

    id: str
    span_id: str
    root_span_id: str
    span_parents: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        is_root = self.root_span_id == self.span_id
        if is_root == bool(self.span_parents):
            raise ValueError(
                "span_parents must be empty exactly when root_span_id == span_id "
                f"(span_id={self.span_id!r}, root_span_id={self.root_span_id!r}, "
                f"span_parents={self.span_parents!r})"
            )

    @classmethod
    def create(cls, row_id: str | None = None, parent: ParentSpanIds | None = None) -> "SpanIdentity":
        span_id = new_id()
        if parent is None:
            return cls(id=row_id or new_id(), span_id=span_id, root_span_id=span_id)
        return cls(
            id=row_id or new_id(),
            span_id=span_id,
            root_span_id=parent.root_span_id,
            span_parents=(parent.span_id,),
        )

    @property
    def is_root(self) -> bool:
        return not self.span_parents

    def as_parent(self) -> ParentSpanIds:
        return ParentSpanIds(span_id=self.span_id, root_span_id=self.root_span_id)

    def row_fields(self) -> dict[str, object]:
        fields: dict[str, object] = {
            "id": self.id,
            "span_id": self.span_id,
            "root_span_id": self.root_span_id,
        }
        if self.span_parents:
            fields["span_parents"] = list(self.span_parents)
        return fields
