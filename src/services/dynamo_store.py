"""DynamoDB backend for :class:`~src.services.store.DocumentStore`.

Single-table layout:

* ``pk`` (S) - collection path, e.g. ``tenants/t1/appointments``
* ``sk`` (S) - document id
* ``data`` (M) - the document body

Transactions are optimistic.  Each scope (tenant id) owns a version item at
``pk = "__scopes__", sk = <scope>``.  A transaction reads the version, runs
the caller's function against consistent reads, then commits every staged
``Put`` together with a conditional bump of the version in one
``TransactWriteItems`` call.  A concurrent commit in the same scope cancels
the write; the function is then re-run against fresh data, up to
``MAX_TRANSACTION_ATTEMPTS`` times.  Transaction functions must therefore
only have side effects through the transaction object.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Sequence
from decimal import Decimal
from typing import Any, TypeVar

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from src.services.metrics import metrics
from src.services.store import (
    Document,
    DocumentStore,
    Filter,
    StagedTransaction,
    StoreUnavailableError,
    Transaction,
    apply_query,
    deep_merge,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_TRANSACTION_ATTEMPTS = 5
INITIAL_BACKOFF_SECONDS = 0.05
SCOPES_PK = "__scopes__"
GLOBAL_SCOPE = "__global__"

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _key(path: str) -> dict[str, dict[str, str]]:
    collection, doc_id = path.rsplit("/", 1)
    return {"pk": {"S": collection}, "sk": {"S": doc_id}}


def _encode(data: dict[str, Any]) -> dict[str, Any]:
    """Serialise a document body to a DynamoDB ``M`` attribute."""
    # DynamoDB rejects floats; round-trip through JSON to get Decimals.
    normalised = json.loads(json.dumps(data, default=str), parse_float=Decimal)
    return _serializer.serialize(normalised)


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list | set):
        return [_plain(v) for v in value]
    return value


def _decode(attribute: dict[str, Any]) -> dict[str, Any]:
    return _plain(_deserializer.deserialize(attribute))


class DynamoDocumentStore(DocumentStore):
    """Document store on a single DynamoDB table (see module docstring)."""

    def __init__(self, table_name: str, *, client=None) -> None:
        self._table_name = table_name
        self._client = client  # lazy-init

    def _get_client(self):
        if self._client is None:
            import boto3

            self._client = boto3.client("dynamodb")
        return self._client

    def _call(self, operation: str, **kwargs) -> dict[str, Any]:
        """Invoke a DynamoDB API call, mapping transport failures."""
        t0 = time.perf_counter()
        try:
            response = getattr(self._get_client(), operation)(**kwargs)
        except (BotoCoreError, ClientError) as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "dynamodb", operation, error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise
        metrics.record_success("dynamodb", operation, latency_ms=(time.perf_counter() - t0) * 1000)
        return response

    # ── Plain operations ─────────────────────────────────────────────

    def get(self, path: str) -> dict[str, Any] | None:
        try:
            resp = self._call(
                "get_item", TableName=self._table_name, Key=_key(path), ConsistentRead=True,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StoreUnavailableError(f"get {path} failed: {exc}") from exc
        item = resp.get("Item")
        if not item or "data" not in item:
            return None
        return _decode(item["data"])

    def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        if merge:
            data = deep_merge(self.get(path) or {}, data)
        try:
            self._call(
                "put_item",
                TableName=self._table_name,
                Item={**_key(path), "data": _encode(data)},
            )
        except (BotoCoreError, ClientError) as exc:
            raise StoreUnavailableError(f"put {path} failed: {exc}") from exc

    def query(
        self,
        collection: str,
        where: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        docs: list[Document] = []
        kwargs: dict[str, Any] = {
            "TableName": self._table_name,
            "KeyConditionExpression": "pk = :pk",
            "ExpressionAttributeValues": {":pk": {"S": collection}},
            "ConsistentRead": True,
        }
        try:
            while True:
                resp = self._call("query", **kwargs)
                for item in resp.get("Items", []):
                    doc_id = item["sk"]["S"]
                    docs.append(Document(
                        id=doc_id,
                        path=f"{collection}/{doc_id}",
                        data=_decode(item["data"]),
                    ))
                last_key = resp.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except (BotoCoreError, ClientError) as exc:
            raise StoreUnavailableError(f"query {collection} failed: {exc}") from exc
        return apply_query(docs, where, order_by, descending, limit)

    # ── Transactions ─────────────────────────────────────────────────

    def _read_version(self, scope: str) -> int:
        try:
            resp = self._call(
                "get_item",
                TableName=self._table_name,
                Key={"pk": {"S": SCOPES_PK}, "sk": {"S": scope}},
                ConsistentRead=True,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StoreUnavailableError(f"scope read {scope} failed: {exc}") from exc
        item = resp.get("Item") or {}
        return int(item.get("version", {}).get("N", "0"))

    def _version_bump(self, scope: str, current: int) -> dict[str, Any]:
        return {
            "Update": {
                "TableName": self._table_name,
                "Key": {"pk": {"S": SCOPES_PK}, "sk": {"S": scope}},
                "UpdateExpression": "SET #v = :next",
                "ConditionExpression": "attribute_not_exists(#v) OR #v = :current",
                "ExpressionAttributeNames": {"#v": "version"},
                "ExpressionAttributeValues": {
                    ":next": {"N": str(current + 1)},
                    ":current": {"N": str(current)},
                },
            }
        }

    def run_transaction(
        self, fn: Callable[[Transaction], T], *, scope: str | None = None,
    ) -> T:
        scope = scope or GLOBAL_SCOPE
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            version = self._read_version(scope)
            txn = StagedTransaction(self)
            result = fn(txn)
            if not txn.staged:
                return result

            items = [self._version_bump(scope, version)]
            for path, data in txn.staged.items():
                items.append({
                    "Put": {
                        "TableName": self._table_name,
                        "Item": {**_key(path), "data": _encode(data)},
                    }
                })

            try:
                self._call("transact_write_items", TransactItems=items)
                return result
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code")
                if code != "TransactionCanceledException":
                    raise StoreUnavailableError(f"transaction failed: {exc}") from exc
                backoff = INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))
                logger.warning(
                    "Transaction conflict in scope %s (attempt %d/%d). Retrying in %.2fs…",
                    scope, attempt, MAX_TRANSACTION_ATTEMPTS, backoff,
                )
                time.sleep(backoff)
            except BotoCoreError as exc:
                raise StoreUnavailableError(f"transaction failed: {exc}") from exc

        raise StoreUnavailableError(
            f"Transaction in scope {scope} did not commit after "
            f"{MAX_TRANSACTION_ATTEMPTS} attempts"
        )
