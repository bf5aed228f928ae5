"""
Audit logger.

Builds and persists append-only AuditRecords and answers audit queries by
date range, admin, action and target. Records written by this process are
also kept for a short time in memory and merged into index queries, so an
admin always sees their own just-committed actions even before the
secondary index catches up.
"""

import logging
import threading
import time
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Iterator, List, Optional, Tuple

from boto3.dynamodb.conditions import Attr, Key

from admin_plane.core.database import MAX_PAGE_SIZE, Put, Store, decode_token, encode_token
from admin_plane.core.errors import validation_error
from admin_plane.core.timeutils import as_utc, iter_days_desc, to_iso, utcnow
from admin_plane.models.admin import AuditAction, AuditRecord
from .realtime import Multiplexer


logger = logging.getLogger(__name__)

DEFAULT_RANGE_DAYS = 30


def clamp_limit(limit: Optional[int], default: int = 50) -> int:
    if limit is None:
        return default
    if limit < 1:
        raise validation_error("limit", "min", "limit must be at least 1")
    return min(limit, MAX_PAGE_SIZE)


class AuditLogger:
    """
    Append-only audit trail.

    Args:
        store: Table gateway
        publisher: Realtime publisher for `dashboard:activity`
        retention_days: Window searched by index queries without a start date
        recent_ttl: Seconds a committed record stays in the read-your-writes buffer
    """

    def __init__(
        self,
        store: Store,
        publisher: Optional[Multiplexer] = None,
        retention_days: int = 365,
        recent_ttl: float = 30.0
    ):
        self.store = store
        self.publisher = publisher
        self.retention_days = retention_days
        self.recent_ttl = recent_ttl
        self._recent: Deque[Tuple[float, AuditRecord]] = deque()
        self._lock = threading.Lock()

    # Writing

    def record(
        self,
        admin_id: str,
        action: AuditAction,
        target_entity: str,
        details: Optional[Dict[str, Any]] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> AuditRecord:
        """Build a record without persisting it."""
        return AuditRecord.create(admin_id, action, target_entity, details, ip, user_agent)

    def write_op(self, record: AuditRecord) -> Put:
        """Conditional put for use inside a transaction."""
        return Put(record.to_item(), condition=Attr("PK").not_exists())

    def persist(self, record: AuditRecord) -> AuditRecord:
        op = self.write_op(record)
        self.store.put(op.item, condition=op.condition)
        return record

    def committed(self, record: AuditRecord) -> None:
        """Call once the record is durable: remember it and push it to dashboards."""
        now = time.monotonic()
        with self._lock:
            self._recent.append((now, record))
            while self._recent and now - self._recent[0][0] > self.recent_ttl:
                self._recent.popleft()
        if self.publisher:
            self.publisher.publish("dashboard:activity", record.model_dump(mode="json"))
        logger.info(
            f"Audit {record.action.value} by {record.adminId} on {record.targetEntity}",
            extra={"action_id": record.actionId},
        )

    def log(
        self,
        admin_id: str,
        action: AuditAction,
        target_entity: str,
        details: Optional[Dict[str, Any]] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> AuditRecord:
        """Persist a record and publish it."""
        record = self.persist(self.record(admin_id, action, target_entity, details, ip, user_agent))
        self.committed(record)
        return record

    def _recent_matching(self, predicate) -> List[AuditRecord]:
        now = time.monotonic()
        with self._lock:
            return [r for at, r in self._recent if now - at <= self.recent_ttl and predicate(r)]

    # Queries

    def _bounds(self, start: Optional[datetime], end: Optional[datetime], default_days: int) -> Tuple[datetime, datetime]:
        end = as_utc(end) or utcnow()
        start = as_utc(start) or end - timedelta(days=default_days)
        if start > end:
            raise validation_error("startDate", "before_end", "startDate must not be after endDate")
        return start, end

    def _index_query(
        self,
        index: str,
        attribute: str,
        value: str,
        start: Optional[datetime],
        end: Optional[datetime],
        limit: Optional[int],
        token: Optional[str]
    ) -> Tuple[List[AuditRecord], Optional[str]]:
        limit = clamp_limit(limit)
        start, end = self._bounds(start, end, self.retention_days)
        lower, upper = to_iso(start), to_iso(end)
        page = self.store.query(
            Key(attribute).eq(value) & Key("timestamp").between(lower, upper + "~"),
            index=index,
            limit=limit,
            start_key=decode_token(token),
            forward=False,
        )
        records = [AuditRecord.from_item(i) for i in page.items]
        next_key = page.last_key

        if token is None:
            seen = {r.actionId for r in records}
            extra = self._recent_matching(
                lambda r: getattr(r, attribute) == value
                and lower <= r.timestamp <= upper + "~"
                and r.actionId not in seen
            )
            if extra:
                records = sorted(records + extra, key=lambda r: r.sk, reverse=True)
                if len(records) > limit:
                    records = records[:limit]
                    last = records[-1]
                    next_key = {
                        attribute: value,
                        "timestamp": last.timestamp,
                        "PK": last.pk,
                        "SK": last.sk,
                    }
        return records, encode_token(next_key)

    def by_admin(self, admin_id: str, start=None, end=None, limit=None, token=None):
        return self._index_query("byAdmin", "adminId", admin_id, start, end, limit, token)

    def by_action(self, action: AuditAction, start=None, end=None, limit=None, token=None):
        return self._index_query("byAction", "action", action.value, start, end, limit, token)

    def by_target(self, target_entity: str, start=None, end=None, limit=None, token=None):
        return self._index_query("byTarget", "targetEntity", target_entity, start, end, limit, token)

    def by_range(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        token: Optional[str] = None,
        action: Optional[AuditAction] = None,
        admin_id: Optional[str] = None
    ) -> Tuple[List[AuditRecord], Optional[str]]:
        """
        Page through day partitions newest first.

        The continuation token carries the day being read and the key to
        resume from within it.
        """
        limit = clamp_limit(limit)
        start, end = self._bounds(start, end, DEFAULT_RANGE_DAYS)
        cursor = decode_token(token, "token") or {}
        resume_day = cursor.get("d")
        resume_key = cursor.get("k")

        filter = None
        if action:
            filter = Attr("action").eq(action.value)
        if admin_id:
            admin_filter = Attr("adminId").eq(admin_id)
            filter = admin_filter if filter is None else filter & admin_filter

        lower, upper = to_iso(start), to_iso(end) + "~"
        records: List[AuditRecord] = []
        days = list(iter_days_desc(start, end))
        if resume_day:
            days = [d for d in days if d <= resume_day]

        for position, day in enumerate(days):
            start_key = resume_key if day == resume_day else None
            while True:
                page = self.store.query(
                    Key("PK").eq(f"AUDIT#{day}") & Key("SK").between(lower, upper),
                    limit=limit - len(records),
                    start_key=start_key,
                    forward=False,
                    filter=filter,
                    consistent=True,
                )
                records.extend(AuditRecord.from_item(i) for i in page.items)
                start_key = page.last_key
                if len(records) >= limit:
                    if start_key:
                        return records, encode_token({"d": day, "k": start_key})
                    if position + 1 < len(days):
                        return records, encode_token({"d": days[position + 1]})
                    return records, None
                if not start_key:
                    break
        return records, None

    def iter_range(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Iterator[AuditRecord]:
        token = None
        while True:
            records, token = self.by_range(start, end, limit=MAX_PAGE_SIZE, token=token)
            yield from records
            if not token:
                return

    def recent(self, limit: int = 10) -> List[AuditRecord]:
        records, _ = self.by_range(limit=limit)
        return records

    def query(
        self,
        admin_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        target_entity: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        token: Optional[str] = None
    ) -> Tuple[List[AuditRecord], Optional[str]]:
        """Pick the narrowest access path for the given filters."""
        if target_entity:
            records, next_token = self.by_target(target_entity, start, end, limit, token)
        elif admin_id:
            records, next_token = self.by_admin(admin_id, start, end, limit, token)
        elif action:
            records, next_token = self.by_action(action, start, end, limit, token)
        else:
            return self.by_range(start, end, limit, token)
        if admin_id:
            records = [r for r in records if r.adminId == admin_id]
        if action:
            records = [r for r in records if r.action == action]
        return records, next_token

    def statistics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        by_type: Counter = Counter()
        by_admin: Counter = Counter()
        by_date: Counter = Counter()
        total = 0
        for record in self.iter_range(start, end):
            total += 1
            by_type[record.action.value] += 1
            by_admin[record.adminId] += 1
            by_date[record.timestamp[:10]] += 1
        return {
            "totalActions": total,
            "actionsByType": dict(by_type),
            "actionsByAdmin": dict(by_admin),
            "actionsByDate": dict(sorted(by_date.items())),
        }
