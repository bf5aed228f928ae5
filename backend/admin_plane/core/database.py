"""
Store access for the admin control plane.

Wraps the single wide-row DynamoDB table behind a small interface:
get, query, scan, put(cond), update(cond), delete, batch reads/writes and
transactional writes. Conditional writes raise ConditionFailed; every other
store error surfaces as STORE_FAILED.
"""

import base64
import binascii
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import boto3
from boto3.dynamodb.conditions import ConditionBase, ConditionExpressionBuilder
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import AdminError, ErrorKind, validation_error


logger = logging.getLogger(__name__)

# Secondary indexes: name -> (partition attribute, sort attribute)
INDEXES = {
    "byAdmin": ("adminId", "timestamp"),
    "byTarget": ("targetEntity", "timestamp"),
    "byAction": ("action", "timestamp"),
    "byUser": ("userId", "timestamp"),
}

MAX_PAGE_SIZE = 1000
BATCH_WRITE_SIZE = 25
BATCH_GET_SIZE = 100


class ConditionFailed(Exception):
    """Raised when a conditional write's condition does not hold."""


class TransactionCancelled(Exception):
    """
    Raised when a transactional write is cancelled.

    `reasons` holds one code per operation, in submission order
    (e.g. "ConditionalCheckFailed" or None).
    """

    def __init__(self, reasons: List[Optional[str]]):
        self.reasons = reasons
        super().__init__(f"Transaction cancelled: {reasons}")

    def failed_at(self, index: int) -> bool:
        return index < len(self.reasons) and self.reasons[index] not in (None, "None")

    @property
    def conflict(self) -> bool:
        return any(r == "ConditionalCheckFailed" for r in self.reasons)


@dataclass
class Put:
    item: Dict[str, Any]
    condition: Optional[ConditionBase] = None


@dataclass
class Update:
    key: Dict[str, str]
    set_values: Dict[str, Any] = field(default_factory=dict)
    remove: Sequence[str] = ()
    add: Dict[str, Any] = field(default_factory=dict)
    condition: Optional[ConditionBase] = None


@dataclass
class Delete:
    key: Dict[str, str]
    condition: Optional[ConditionBase] = None


@dataclass
class ConditionCheck:
    key: Dict[str, str]
    condition: ConditionBase


@dataclass
class Page:
    items: List[Dict[str, Any]]
    last_key: Optional[Dict[str, Any]] = None


def key_of(pk: str, sk: str) -> Dict[str, str]:
    return {"PK": pk, "SK": sk}


def encode_token(last_key: Optional[Dict[str, Any]]) -> Optional[str]:
    """Encode a continuation key as an opaque url-safe string."""
    if not last_key:
        return None
    raw = json.dumps(last_key, separators=(",", ":"), sort_keys=True, default=str)
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_token(token: Optional[str], field_name: str = "lastEvaluatedKey") -> Optional[Dict[str, Any]]:
    """
    Decode a token produced by encode_token.

    Raises:
        AdminError: VALIDATION when the token is not one we issued
    """
    if not token:
        return None
    try:
        padded = token + "=" * (-len(token) % 4)
        value = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, binascii.Error, UnicodeError):
        raise validation_error(field_name, "format", "Invalid continuation token")
    if not isinstance(value, dict):
        raise validation_error(field_name, "format", "Invalid continuation token")
    return value


def _to_dynamo(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(v) for v in value]
    return value


def _from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {_from_dynamo(v) for v in value}
    return value


class StoreMetrics:
    """
    In-process counters for store calls (used by the system health views).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.operations: Dict[str, int] = {}
        self.errors: Dict[str, int] = {}
        self.total_ms: Dict[str, float] = {}

    def record(self, operation: str, elapsed_ms: float, failed: bool) -> None:
        with self._lock:
            self.operations[operation] = self.operations.get(operation, 0) + 1
            self.total_ms[operation] = self.total_ms.get(operation, 0.0) + elapsed_ms
            if failed:
                self.errors[operation] = self.errors.get(operation, 0) + 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            total = sum(self.operations.values())
            errors = sum(self.errors.values())
            elapsed = sum(self.total_ms.values())
            return {
                "totalOperations": total,
                "failedOperations": errors,
                "errorRate": round(errors / total, 4) if total else 0.0,
                "averageLatencyMs": round(elapsed / total, 2) if total else 0.0,
                "byOperation": {
                    op: {
                        "count": count,
                        "errors": self.errors.get(op, 0),
                        "averageLatencyMs": round(self.total_ms[op] / count, 2),
                    }
                    for op, count in sorted(self.operations.items())
                },
            }


class Store:
    """
    Typed gateway to the single DynamoDB table.

    All items are plain dicts with Python numbers; Decimal conversion and
    attribute serialization happen here.
    """

    def __init__(
        self,
        table_name: str,
        region: str,
        endpoint_url: Optional[str] = None,
        use_transactions: bool = True,
        client: Any = None
    ):
        self.table_name = table_name
        self.region = region
        self.use_transactions = use_transactions
        self.client = client or boto3.client(
            "dynamodb",
            region_name=region,
            endpoint_url=endpoint_url,
            config=Config(
                connect_timeout=5,
                read_timeout=10,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )
        self.metrics = StoreMetrics()
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    @classmethod
    def from_settings(cls, settings: Settings) -> "Store":
        return cls(
            table_name=settings.TABLE_NAME,
            region=settings.REGION,
            endpoint_url=settings.DYNAMODB_ENDPOINT_URL,
            use_transactions=settings.USE_TRANSACTIONS,
        )

    # Serialization

    def serialize(self, item: Dict[str, Any]) -> Dict[str, Any]:
        return {
            k: self._serializer.serialize(_to_dynamo(v))
            for k, v in item.items()
            if v is not None
        }

    def deserialize(self, item: Dict[str, Any]) -> Dict[str, Any]:
        return {k: _from_dynamo(self._deserializer.deserialize(v)) for k, v in item.items()}

    def _build(
        self,
        builder: ConditionExpressionBuilder,
        condition: ConditionBase,
        is_key_condition: bool,
        names: Dict[str, str],
        values: Dict[str, Any]
    ) -> str:
        built = builder.build_expression(condition, is_key_condition=is_key_condition)
        names.update(built.attribute_name_placeholders)
        for placeholder, value in built.attribute_value_placeholders.items():
            values[placeholder] = self._serializer.serialize(_to_dynamo(value))
        return built.condition_expression

    @staticmethod
    def _attach(request: Dict[str, Any], names: Dict[str, str], values: Dict[str, Any]) -> Dict[str, Any]:
        if names:
            request["ExpressionAttributeNames"] = names
        if values:
            request["ExpressionAttributeValues"] = values
        return request

    def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        started = time.perf_counter()
        failed = True
        try:
            response = getattr(self.client, operation)(**kwargs)
            failed = False
            return response
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code == "ConditionalCheckFailedException":
                failed = False
                raise ConditionFailed(operation) from exc
            if code == "TransactionCanceledException":
                reasons = _cancellation_reasons(exc)
                failed = not any(r == "ConditionalCheckFailed" for r in reasons)
                raise TransactionCancelled(reasons) from exc
            logger.error(f"DynamoDB {operation} failed: {code}")
            raise AdminError(ErrorKind.STORE_FAILED) from exc
        except BotoCoreError as exc:
            logger.error(f"DynamoDB {operation} failed: {type(exc).__name__}")
            raise AdminError(ErrorKind.STORE_FAILED) from exc
        finally:
            self.metrics.record(operation, (time.perf_counter() - started) * 1000, failed)

    # Reads

    def get(self, pk: str, sk: str, consistent: bool = True) -> Optional[Dict[str, Any]]:
        response = self._call(
            "get_item",
            TableName=self.table_name,
            Key=self.serialize(key_of(pk, sk)),
            ConsistentRead=consistent,
        )
        item = response.get("Item")
        return self.deserialize(item) if item else None

    def batch_get(self, keys: Sequence[Dict[str, str]]) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        unique = list({(k["PK"], k["SK"]): k for k in keys}.values())
        for start in range(0, len(unique), BATCH_GET_SIZE):
            request = {
                self.table_name: {
                    "Keys": [self.serialize(k) for k in unique[start:start + BATCH_GET_SIZE]],
                    "ConsistentRead": True,
                }
            }
            attempts = 0
            while request:
                response = self._call("batch_get_item", RequestItems=request)
                results.extend(
                    self.deserialize(i) for i in response.get("Responses", {}).get(self.table_name, [])
                )
                request = response.get("UnprocessedKeys") or {}
                attempts += 1
                if request and attempts >= 5:
                    raise AdminError(ErrorKind.STORE_FAILED)
                if request:
                    time.sleep(0.05 * attempts)
        return results

    def query(
        self,
        key_condition: ConditionBase,
        index: Optional[str] = None,
        limit: Optional[int] = None,
        start_key: Optional[Dict[str, Any]] = None,
        forward: bool = True,
        filter: Optional[ConditionBase] = None,
        consistent: bool = False
    ) -> Page:
        """
        Run one query page.

        Args:
            key_condition: Key condition built from boto3 `Key`
            index: Secondary index name, or None for the base table
            limit: Maximum items to evaluate (capped at MAX_PAGE_SIZE)
            start_key: Continuation key from a previous page
            forward: Sort-key ascending when True
            filter: Optional filter applied after the key condition
            consistent: Strongly consistent read (base table only)
        """
        builder = ConditionExpressionBuilder()
        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        request: Dict[str, Any] = {
            "TableName": self.table_name,
            "KeyConditionExpression": self._build(builder, key_condition, True, names, values),
            "ScanIndexForward": forward,
            "Limit": min(limit or MAX_PAGE_SIZE, MAX_PAGE_SIZE),
        }
        if filter is not None:
            request["FilterExpression"] = self._build(builder, filter, False, names, values)
        if index:
            request["IndexName"] = index
        elif consistent:
            request["ConsistentRead"] = True
        if start_key:
            request["ExclusiveStartKey"] = self.serialize(start_key)
        response = self._call("query", **self._attach(request, names, values))
        last = response.get("LastEvaluatedKey")
        return Page(
            items=[self.deserialize(i) for i in response.get("Items", [])],
            last_key=self.deserialize(last) if last else None,
        )

    def query_all(self, key_condition: ConditionBase, **kwargs) -> Iterator[Dict[str, Any]]:
        start_key = kwargs.pop("start_key", None)
        while True:
            page = self.query(key_condition, start_key=start_key, **kwargs)
            yield from page.items
            if not page.last_key:
                return
            start_key = page.last_key

    def scan(
        self,
        filter: Optional[ConditionBase] = None,
        limit: Optional[int] = None,
        start_key: Optional[Dict[str, Any]] = None,
        count_only: bool = False
    ) -> Tuple[Page, int]:
        """Run one scan page. Returns the page and the matched count."""
        builder = ConditionExpressionBuilder()
        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        request: Dict[str, Any] = {"TableName": self.table_name}
        if filter is not None:
            request["FilterExpression"] = self._build(builder, filter, False, names, values)
        if limit:
            request["Limit"] = min(limit, MAX_PAGE_SIZE)
        if start_key:
            request["ExclusiveStartKey"] = self.serialize(start_key)
        if count_only:
            request["Select"] = "COUNT"
        response = self._call("scan", **self._attach(request, names, values))
        last = response.get("LastEvaluatedKey")
        page = Page(
            items=[self.deserialize(i) for i in response.get("Items", [])],
            last_key=self.deserialize(last) if last else None,
        )
        return page, response.get("Count", len(page.items))

    def scan_all(self, filter: Optional[ConditionBase] = None) -> Iterator[Dict[str, Any]]:
        start_key = None
        while True:
            page, _ = self.scan(filter=filter, start_key=start_key)
            yield from page.items
            if not page.last_key:
                return
            start_key = page.last_key

    def count(self, filter: Optional[ConditionBase] = None) -> int:
        total = 0
        start_key = None
        while True:
            page, matched = self.scan(filter=filter, start_key=start_key, count_only=True)
            total += matched
            if not page.last_key:
                return total
            start_key = page.last_key

    # Writes

    def _put_request(self, op: Put) -> Dict[str, Any]:
        request: Dict[str, Any] = {"TableName": self.table_name, "Item": self.serialize(op.item)}
        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        if op.condition is not None:
            request["ConditionExpression"] = self._build(
                ConditionExpressionBuilder(), op.condition, False, names, values
            )
        return self._attach(request, names, values)

    def _update_request(self, op: Update) -> Dict[str, Any]:
        if not (op.set_values or op.remove or op.add):
            raise ValueError("Update requires at least one change")
        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        clauses = []
        set_parts = []
        for i, (attr, value) in enumerate(op.set_values.items()):
            names[f"#u{i}"] = attr
            values[f":u{i}"] = self._serializer.serialize(_to_dynamo(value))
            set_parts.append(f"#u{i} = :u{i}")
        if set_parts:
            clauses.append("SET " + ", ".join(set_parts))
        if op.remove:
            remove_parts = []
            for i, attr in enumerate(op.remove):
                names[f"#r{i}"] = attr
                remove_parts.append(f"#r{i}")
            clauses.append("REMOVE " + ", ".join(remove_parts))
        if op.add:
            add_parts = []
            for i, (attr, value) in enumerate(op.add.items()):
                names[f"#a{i}"] = attr
                values[f":a{i}"] = self._serializer.serialize(_to_dynamo(value))
                add_parts.append(f"#a{i} :a{i}")
            clauses.append("ADD " + ", ".join(add_parts))
        request: Dict[str, Any] = {
            "TableName": self.table_name,
            "Key": self.serialize(op.key),
            "UpdateExpression": " ".join(clauses),
        }
        if op.condition is not None:
            request["ConditionExpression"] = self._build(
                ConditionExpressionBuilder(), op.condition, False, names, values
            )
        return self._attach(request, names, values)

    def _delete_request(self, op: Delete) -> Dict[str, Any]:
        request: Dict[str, Any] = {"TableName": self.table_name, "Key": self.serialize(op.key)}
        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        if op.condition is not None:
            request["ConditionExpression"] = self._build(
                ConditionExpressionBuilder(), op.condition, False, names, values
            )
        return self._attach(request, names, values)

    def _check_request(self, op: ConditionCheck) -> Dict[str, Any]:
        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        request = {
            "TableName": self.table_name,
            "Key": self.serialize(op.key),
            "ConditionExpression": self._build(
                ConditionExpressionBuilder(), op.condition, False, names, values
            ),
        }
        return self._attach(request, names, values)

    def put(self, item: Dict[str, Any], condition: Optional[ConditionBase] = None) -> Dict[str, Any]:
        self._call("put_item", **self._put_request(Put(item, condition)))
        return item

    def update(
        self,
        key: Dict[str, str],
        set_values: Optional[Dict[str, Any]] = None,
        remove: Sequence[str] = (),
        add: Optional[Dict[str, Any]] = None,
        condition: Optional[ConditionBase] = None
    ) -> Dict[str, Any]:
        """Apply an update and return the item as it is after the write."""
        request = self._update_request(Update(key, set_values or {}, remove, add or {}, condition))
        response = self._call("update_item", ReturnValues="ALL_NEW", **request)
        return self.deserialize(response.get("Attributes", {}))

    def delete(self, key: Dict[str, str], condition: Optional[ConditionBase] = None) -> None:
        self._call("delete_item", **self._delete_request(Delete(key, condition)))

    def batch_write(
        self,
        puts: Sequence[Dict[str, Any]] = (),
        deletes: Sequence[Dict[str, str]] = ()
    ) -> int:
        """Write items in chunks of 25, retrying unprocessed items. Returns items written."""
        requests = [{"PutRequest": {"Item": self.serialize(i)}} for i in puts]
        requests += [{"DeleteRequest": {"Key": self.serialize(k)}} for k in deletes]
        for start in range(0, len(requests), BATCH_WRITE_SIZE):
            pending = {self.table_name: requests[start:start + BATCH_WRITE_SIZE]}
            attempts = 0
            while pending:
                response = self._call("batch_write_item", RequestItems=pending)
                pending = response.get("UnprocessedItems") or {}
                attempts += 1
                if pending and attempts >= 5:
                    raise AdminError(ErrorKind.STORE_FAILED)
                if pending:
                    time.sleep(0.05 * attempts)
        return len(requests)

    def transact_write(self, operations: Sequence[Any]) -> None:
        """
        Apply up to 100 operations atomically.

        Raises:
            TransactionCancelled: when any condition fails or the transaction conflicts
        """
        items = []
        for op in operations:
            if isinstance(op, Put):
                items.append({"Put": self._put_request(op)})
            elif isinstance(op, Update):
                items.append({"Update": self._update_request(op)})
            elif isinstance(op, Delete):
                items.append({"Delete": self._delete_request(op)})
            elif isinstance(op, ConditionCheck):
                items.append({"ConditionCheck": self._check_request(op)})
            else:
                raise TypeError(f"Unsupported transaction operation: {type(op).__name__}")
        self._call("transact_write_items", TransactItems=items)

    # Table management

    def ping(self) -> float:
        """Round-trip a point read and return latency in milliseconds."""
        started = time.perf_counter()
        self.get("SYSTEM#HEALTH", "PING", consistent=False)
        return round((time.perf_counter() - started) * 1000, 2)

    def describe(self) -> Dict[str, Any]:
        table = self._call("describe_table", TableName=self.table_name)["Table"]
        return {
            "tableName": table.get("TableName"),
            "status": table.get("TableStatus"),
            "itemCount": table.get("ItemCount", 0),
            "sizeBytes": table.get("TableSizeBytes", 0),
            "indexes": [
                {
                    "name": gsi.get("IndexName"),
                    "status": gsi.get("IndexStatus"),
                    "itemCount": gsi.get("ItemCount", 0),
                }
                for gsi in table.get("GlobalSecondaryIndexes", [])
            ],
        }

    def ensure_table(self) -> None:
        """
        Create the table and its secondary indexes if they do not exist.
        """
        attributes = {"PK", "SK"}
        for pk_attr, sk_attr in INDEXES.values():
            attributes.update((pk_attr, sk_attr))
        try:
            self.client.create_table(
                TableName=self.table_name,
                BillingMode="PAY_PER_REQUEST",
                KeySchema=[
                    {"AttributeName": "PK", "KeyType": "HASH"},
                    {"AttributeName": "SK", "KeyType": "RANGE"},
                ],
                AttributeDefinitions=[
                    {"AttributeName": name, "AttributeType": "S"} for name in sorted(attributes)
                ],
                GlobalSecondaryIndexes=[
                    {
                        "IndexName": index_name,
                        "KeySchema": [
                            {"AttributeName": pk_attr, "KeyType": "HASH"},
                            {"AttributeName": sk_attr, "KeyType": "RANGE"},
                        ],
                        "Projection": {"ProjectionType": "ALL"},
                    }
                    for index_name, (pk_attr, sk_attr) in INDEXES.items()
                ],
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "ResourceInUseException":
                raise AdminError(ErrorKind.STORE_FAILED) from exc
            return
        self.client.get_waiter("table_exists").wait(TableName=self.table_name)
        logger.info(f"Created table {self.table_name}")


_REASONS_PATTERN = re.compile(r"\[(.*)\]")


def _cancellation_reasons(exc: ClientError) -> List[Optional[str]]:
    reasons = exc.response.get("CancellationReasons")
    if reasons:
        return [r.get("Code") if r.get("Code") != "None" else None for r in reasons]
    match = _REASONS_PATTERN.search(exc.response.get("Error", {}).get("Message", ""))
    if not match:
        return []
    return [
        None if part.strip() in ("None", "") else part.strip()
        for part in match.group(1).split(",")
    ]
