from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict

from .errors import MalformedEventError

HASH_ALGORITHM = "sha256"
CONTENT_GROUP_LABEL = "content_group_label"
REFERENCE_TYPE = "checksum256"

_HEX_RE = re.compile(r"^[0-9a-fA-F]{1,64}$")


def parse_content_hash(value: Any) -> str:
    """Validate a sha256 content hash and normalise it to lower-case hex."""
    if not isinstance(value, str):
        raise ValueError(f"content hash must be a string, got {type(value).__name__}")
    s = value.strip()
    if not _HEX_RE.match(s):
        raise ValueError(f"not a {HASH_ALGORITHM} hex digest: {value!r}")
    return s.lower()


def _parse_ts(v: Any) -> datetime | None:
    if v is None:
        return None
    if isinstance(v, datetime):
        return v
    if isinstance(v, str):
        s = v.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(s)
        except ValueError:
            return None
        # Hyperion emits naive UTC timestamps.
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    return None


@dataclass(frozen=True, slots=True)
class ActionEvent:
    """One action notification received from the feed.

    `event_id` is the feed-assigned id (the action's global sequence) and is
    what acknowledgement refers to. `block_num` is the feed cursor.
    """

    event_id: str
    contract: str
    action: str
    account: str
    timestamp: datetime | None = None
    payload: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    block_num: int | None = None

    @classmethod
    def from_hyperion(cls, raw: Mapping[str, Any]) -> "ActionEvent":
        act = raw.get("act")
        if not isinstance(act, Mapping):
            raise MalformedEventError("action trace has no 'act' object")

        try:
            seq = int(raw["global_sequence"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedEventError("action trace has no usable global_sequence") from e

        data = act.get("data")
        if not isinstance(data, Mapping):
            data = {}

        block_num = raw.get("block_num")
        try:
            block_num = int(block_num) if block_num is not None else None
        except (TypeError, ValueError):
            block_num = None

        contract = str(act.get("account") or "")
        return cls(
            event_id=str(seq),
            contract=contract,
            action=str(act.get("name") or ""),
            account=str(raw.get("receiver") or contract),
            timestamp=_parse_ts(raw.get("@timestamp") or raw.get("timestamp")),
            payload=MappingProxyType(dict(data)),
            block_num=block_num,
        )

    @property
    def content_hash(self) -> str:
        """The `hash` field of the payload; raises MalformedEventError if absent or invalid."""
        raw = self.payload.get("hash")
        if raw is None:
            raise MalformedEventError(f"event {self.event_id} has no 'hash' field")
        try:
            return parse_content_hash(raw)
        except ValueError as e:
            raise MalformedEventError(f"event {self.event_id}: {e}") from e


@dataclass(frozen=True, slots=True)
class StreamRequest:
    """Parameters of an action-stream subscription.

    `start_from` is an ISO timestamp, a block number, or 0 for "now";
    `read_until` is a bound in the same terms, 0 meaning unbounded.
    """

    contract: str
    action: str
    account: str
    start_from: str | int = 0
    read_until: str | int = 0
    filters: tuple[Mapping[str, Any], ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "contract": self.contract,
            "action": self.action,
            "account": self.account,
            "start_from": self.start_from,
            "read_until": self.read_until,
            "filters": [dict(f) for f in self.filters],
        }

    def resume_from(self, block_num: int) -> "StreamRequest":
        return replace(self, start_from=block_num)


class ContentItem(BaseModel):
    """A labelled value inside a content group.

    On chain the value is a variant rendered as ``[type, value]``.
    """

    model_config = ConfigDict(frozen=True)

    label: str
    type: str
    value: Any = None

    @classmethod
    def from_chain(cls, d: Mapping[str, Any]) -> "ContentItem":
        if not isinstance(d, Mapping):
            raise ValueError(f"content item must be an object, not {type(d).__name__}")
        label = d.get("label")
        if not isinstance(label, str):
            raise ValueError("content item has no label")
        v = d.get("value")
        if isinstance(v, (list, tuple)) and len(v) == 2 and isinstance(v[0], str):
            return cls(label=label, type=v[0], value=v[1])
        if isinstance(v, Mapping) and "type" in v:
            return cls(label=label, type=str(v["type"]), value=v.get("value"))
        raise ValueError(f"content item {label!r} has an unrecognised value: {v!r}")


class Reference(BaseModel):
    """A directed link from a document to another document by hash."""

    model_config = ConfigDict(frozen=True)

    name: str
    target: str


class Document(BaseModel):
    """A document row resolved from chain state.

    Content addressed: two documents with the same hash have the same content.
    """

    model_config = ConfigDict(frozen=True)

    hash: str
    contract: str
    scope: str
    doc_id: int | None = None
    creator: str | None = None
    created_date: str | None = None
    content_groups: tuple[tuple[ContentItem, ...], ...] = ()
    references: tuple[Reference, ...] = ()

    @classmethod
    def from_row(cls, row: Mapping[str, Any], *, contract: str, scope: str) -> "Document":
        """Build a Document from a `documents` table row.

        Raises ValueError when the row does not have the expected shape.
        """
        if not isinstance(row, Mapping):
            raise ValueError(f"document row must be an object, not {type(row).__name__}")
        doc_hash = parse_content_hash(row.get("hash"))

        groups = row.get("content_groups") or []
        if not isinstance(groups, list) or not all(isinstance(g, list) for g in groups):
            raise ValueError("content_groups must be a list of lists")
        content_groups = tuple(
            tuple(ContentItem.from_chain(item) for item in group) for group in groups
        )

        refs: list[Reference] = []
        for group in content_groups:
            for item in group:
                if item.type != REFERENCE_TYPE:
                    continue
                try:
                    target = parse_content_hash(item.value)
                except ValueError:
                    continue
                if target != doc_hash:
                    refs.append(Reference(name=item.label, target=target))

        doc_id = row.get("id")
        if doc_id is not None:
            try:
                doc_id = int(doc_id)
            except (TypeError, ValueError) as e:
                raise ValueError(f"document id is not an integer: {doc_id!r}") from e
        return cls(
            hash=doc_hash,
            contract=contract,
            scope=scope,
            doc_id=doc_id,
            creator=row.get("creator"),
            created_date=row.get("created_date"),
            content_groups=content_groups,
            references=_unique(refs),
        )

    def with_references(self, extra: Iterable[Reference]) -> "Document":
        return self.model_copy(update={"references": _unique([*self.references, *extra])})

    def group_label(self, index: int) -> str:
        for item in self.content_groups[index]:
            if item.label == CONTENT_GROUP_LABEL and isinstance(item.value, str):
                return item.value
        return f"group{index}"

    def properties(self) -> dict[str, Any]:
        """Flat property map: ``"<group>.<label>" -> value`` plus row metadata."""
        props: dict[str, Any] = {
            "contract": self.contract,
            "scope": self.scope,
            "content": self.canonical_content().decode("utf-8"),
        }
        if self.doc_id is not None:
            props["doc_id"] = self.doc_id
        if self.creator:
            props["creator"] = self.creator
        if self.created_date:
            props["created_date"] = self.created_date

        for prefix, group in zip(self._group_prefixes(), self.content_groups):
            for item in group:
                if item.label == CONTENT_GROUP_LABEL:
                    continue
                value = item.value
                if isinstance(value, (dict, list, tuple)):
                    value = json.dumps(value, sort_keys=True)
                props[f"{prefix}.{item.label}"] = value
        return props

    def _group_prefixes(self) -> list[str]:
        # A repeated group label gets the group index appended.
        prefixes: list[str] = []
        for i in range(len(self.content_groups)):
            label = self.group_label(i)
            prefixes.append(f"{label}_{i}" if label in prefixes else label)
        return prefixes

    def canonical_content(self) -> bytes:
        payload = {
            "hash": self.hash,
            "content_groups": [
                [{"label": c.label, "type": c.type, "value": c.value} for c in group]
                for group in self.content_groups
            ],
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _unique(refs: Iterable[Reference]) -> tuple[Reference, ...]:
    seen: set[tuple[str, str]] = set()
    out: list[Reference] = []
    for r in refs:
        key = (r.name, r.target)
        if key not in seen:
            seen.add(key)
            out.append(r)
    return tuple(out)
