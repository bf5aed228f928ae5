"""
Shared repository helpers.

A Mutation describes a versioned change to one row together with the
write that undoes it, so command handlers can compensate when the audit
record for the change cannot be written.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from boto3.dynamodb.conditions import Attr, ConditionBase
from ulid import ULID

from admin_plane.core.database import Delete, Put, Store, Update, decode_token, encode_token
from admin_plane.core.errors import AdminError, ErrorKind


def new_id() -> str:
    return str(ULID())


def version_condition(expected: int) -> ConditionBase:
    """Row exists and still carries `expected` as its version."""
    if expected:
        return Attr("PK").exists() & Attr("version").eq(expected)
    return Attr("PK").exists() & (Attr("version").not_exists() | Attr("version").eq(0))


@dataclass
class Mutation:
    """
    A versioned change to one row.

    Args:
        key: Row key
        before: Row as read before the change
        set_values: Attributes to set
        remove: Attributes to remove
        condition: Extra condition on top of the version check
    """
    key: Dict[str, str]
    before: Dict[str, Any]
    set_values: Dict[str, Any] = field(default_factory=dict)
    remove: Sequence[str] = ()
    condition: Optional[ConditionBase] = None

    @property
    def expected_version(self) -> int:
        return int(self.before.get("version") or 0)

    @property
    def new_version(self) -> int:
        return self.expected_version + 1

    def forward(self) -> Update:
        condition = version_condition(self.expected_version)
        if self.condition is not None:
            condition = condition & self.condition
        return Update(
            key=self.key,
            set_values={**self.set_values, "version": self.new_version},
            remove=[a for a in self.remove if a not in self.set_values],
            condition=condition,
        )

    def compensation(self) -> Update:
        """Write that restores the touched attributes, valid only right after `forward`."""
        touched = set(self.set_values) | set(self.remove)
        restore = {a: self.before[a] for a in touched if a in self.before}
        drop = sorted(a for a in touched if a not in self.before)
        return Update(
            key=self.key,
            set_values={**restore, "version": self.new_version + 1},
            remove=drop,
            condition=Attr("version").eq(self.new_version),
        )

    def after(self) -> Dict[str, Any]:
        view = {k: v for k, v in self.before.items() if k not in self.remove}
        view.update(self.set_values)
        view["version"] = self.new_version
        return view


@dataclass
class Creation:
    """A new row written only if its key is unused."""
    item: Dict[str, Any]

    @property
    def key(self) -> Dict[str, str]:
        return {"PK": self.item["PK"], "SK": self.item["SK"]}

    def forward(self) -> Put:
        return Put(self.item, condition=Attr("PK").not_exists())

    def compensation(self) -> Delete:
        return Delete(self.key, condition=Attr("version").eq(self.item.get("version", 1)))

    def after(self) -> Dict[str, Any]:
        return dict(self.item)


def strip_keys(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in item.items() if k not in {"PK", "SK", "version", "entityType"}}


def scan_page(
    store: Store,
    filter: ConditionBase,
    limit: int,
    token: Optional[str],
    predicate=None,
    max_iterations: int = 10
) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """
    Collect up to `limit` items matching `filter` (and `predicate`, applied in
    process) by scanning, following continuation keys for at most
    `max_iterations` pages.

    Returns the items and an opaque continuation token.
    """
    start_key = decode_token(token)
    collected: List[Dict[str, Any]] = []
    iterations = 0
    last_key = start_key
    while len(collected) < limit and iterations < max_iterations:
        page, _ = store.scan(filter=filter, limit=max(limit * 3, 50), start_key=last_key)
        iterations += 1
        for index, item in enumerate(page.items):
            if predicate is None or predicate(item):
                collected.append(item)
                if len(collected) == limit:
                    # Resume right after the last returned item
                    if index < len(page.items) - 1 or page.last_key:
                        return collected, encode_token({"PK": item["PK"], "SK": item["SK"]})
                    return collected, None
        last_key = page.last_key
        if not last_key:
            return collected, None
    return collected, encode_token(last_key)


class EntityRepository:
    """
    Repository for simple entities keyed by their own id with SK = META.
    """

    def __init__(self, store: Store, entity_type: str, prefix: str, label: str):
        self.store = store
        self.entity_type = entity_type
        self.prefix = prefix
        self.label = label

    def key(self, entity_id: str) -> Dict[str, str]:
        return {"PK": f"{self.prefix}#{entity_id}", "SK": "META"}

    def get(self, entity_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(f"{self.prefix}#{entity_id}", "META")

    def require(self, entity_id: str) -> Dict[str, Any]:
        item = self.get(entity_id)
        if item is None:
            raise AdminError(ErrorKind.NOT_FOUND, f"{self.label} not found")
        return item

    def creation(self, entity_id: str, attributes: Dict[str, Any]) -> Creation:
        item = {
            **attributes,
            "PK": f"{self.prefix}#{entity_id}",
            "SK": "META",
            "entityType": self.entity_type,
            "version": 1,
        }
        return Creation(item)

    def mutation(
        self,
        before: Dict[str, Any],
        set_values: Dict[str, Any],
        remove: Sequence[str] = (),
        condition: Optional[ConditionBase] = None
    ) -> Mutation:
        return Mutation(
            key={"PK": before["PK"], "SK": before["SK"]},
            before=before,
            set_values=set_values,
            remove=remove,
            condition=condition,
        )

    def list(
        self,
        limit: int = 50,
        token: Optional[str] = None,
        filter: Optional[ConditionBase] = None,
        predicate=None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        condition = Attr("entityType").eq(self.entity_type)
        if filter is not None:
            condition = condition & filter
        return scan_page(self.store, condition, limit, token, predicate)

    def all(self, filter: Optional[ConditionBase] = None) -> List[Dict[str, Any]]:
        condition = Attr("entityType").eq(self.entity_type)
        if filter is not None:
            condition = condition & filter
        return list(self.store.scan_all(condition))

    def delete_many(self, items: Sequence[Dict[str, Any]]) -> int:
        return self.store.batch_write(deletes=[{"PK": i["PK"], "SK": i["SK"]} for i in items])


__all__ = [
    "Creation",
    "EntityRepository",
    "Mutation",
    "new_id",
    "scan_page",
    "strip_keys",
    "version_condition",
]
