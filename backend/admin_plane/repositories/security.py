"""
Security event repository.

Events are partitioned by hour (SEC#{yyyy-mm-dd-HH}) and projected onto the
byUser index. Acknowledgements are separate rows so events stay write-once.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from boto3.dynamodb.conditions import Attr, Key
from ulid import ULID

from admin_plane.core.database import Store, decode_token, encode_token
from admin_plane.core.timeutils import hour_key, iter_hours_desc, parse_iso, to_iso, utcnow
from admin_plane.models.admin import SecurityEvent, SecurityEventType
from .base import Creation


def ack_key(event_id: str) -> Dict[str, str]:
    return {"PK": f"SECACK#{event_id}", "SK": "ACK"}


class SecurityEventRepository:
    """Append-only storage for security events."""

    def __init__(self, store: Store):
        self.store = store

    def append(self, event: SecurityEvent) -> SecurityEvent:
        self.store.put(event.to_item(), condition=Attr("PK").not_exists())
        return event

    def iter_recent(
        self,
        hours_back: int,
        event_type: Optional[SecurityEventType] = None,
        now: Optional[datetime] = None
    ) -> Iterator[Dict[str, Any]]:
        """Yield events newest first across hourly partitions."""
        end = now or utcnow()
        start = end - timedelta(hours=hours_back)
        since = to_iso(start)
        filter = Attr("eventType").eq(event_type.value) if event_type else None
        for hour in iter_hours_desc(start, end):
            yield from self.store.query_all(
                Key("PK").eq(f"SEC#{hour}") & Key("SK").gte(since),
                forward=False,
                filter=filter,
                consistent=True,
            )

    def recent(
        self,
        hours_back: int,
        limit: int,
        token: Optional[str] = None,
        event_type: Optional[SecurityEventType] = None,
        now: Optional[datetime] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        One page of events newest first.

        The continuation token pins the page's upper bound so later pages
        stay stable while new events arrive.
        """
        cursor = decode_token(token)
        if cursor and "before" in cursor:
            end = parse_iso(cursor["before"])
            before_sk = cursor["sk"]
        else:
            end = now or utcnow()
            before_sk = None
        start = (now or utcnow()) - timedelta(hours=hours_back)
        items: List[Dict[str, Any]] = []
        filter = Attr("eventType").eq(event_type.value) if event_type else None
        for hour in iter_hours_desc(start, end):
            condition = Key("PK").eq(f"SEC#{hour}")
            if before_sk:
                condition = condition & Key("SK").between(to_iso(start), before_sk)
            else:
                condition = condition & Key("SK").gte(to_iso(start))
            for item in self.store.query_all(condition, forward=False, filter=filter, consistent=True):
                if before_sk and item["SK"] >= before_sk:
                    continue
                items.append(item)
                if len(items) == limit:
                    next_token = encode_token({"before": item["timestamp"], "sk": item["SK"]})
                    return items, next_token
        return items, None

    def by_user(self, user_id: str, event_type: Optional[SecurityEventType] = None) -> List[Dict[str, Any]]:
        filter = Attr("eventType").eq(event_type.value) if event_type else None
        return list(self.store.query_all(
            Key("userId").eq(user_id) & Key("timestamp").gte("0"),
            index="byUser",
            forward=False,
            filter=filter,
        ))

    def find(self, event_id: str) -> Optional[Dict[str, Any]]:
        """Locate an event by id using the timestamp embedded in its ULID."""
        try:
            created = ULID.from_str(event_id).datetime
        except ValueError:
            return None
        for moment in (created, created + timedelta(hours=1), created - timedelta(hours=1)):
            for item in self.store.query_all(
                Key("PK").eq(f"SEC#{hour_key(moment)}"),
                filter=Attr("eventId").eq(event_id),
                consistent=True,
            ):
                return item
        return None

    def acknowledgement(self, event: Dict[str, Any], admin_id: str, note: Optional[str], now: datetime) -> Creation:
        item = {
            **ack_key(event["eventId"]),
            "entityType": "SecurityAck",
            "eventId": event["eventId"],
            "acknowledgedBy": admin_id,
            "acknowledgedAt": to_iso(now),
            "note": note,
            "version": 1,
        }
        return Creation({k: v for k, v in item.items() if v is not None})

    def acknowledged_ids(self, event_ids: Sequence[str]) -> set:
        if not event_ids:
            return set()
        rows = self.store.batch_get([ack_key(e) for e in event_ids])
        return {r["eventId"] for r in rows}
