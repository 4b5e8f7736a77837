"""
DynamoDB intent store.

Uses the table layout of the original deployment (one item per intent,
partition key ``key``) and DynamoDB condition expressions for every state
change. boto3 calls are blocking, so they run in worker threads.
"""
import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..config import DEFAULT_AWS_REGION, DEFAULT_TABLE_NAME
from ..exceptions import IntentCorruptionError, IntentNotFoundError, StoreError
from ..models import Intent, IntentStatus, utcnow
from .base import IntentStore, sort_intents

logger = logging.getLogger(__name__)

# "key" and "status" are DynamoDB reserved words
_NAMES = {"#k": "key", "#st": "status"}

# Item holding the resume cursor, next to the intent items
CURSOR_KEY = "__last_processed_block__"


def intent_to_item(intent: Intent) -> Dict[str, Any]:
    """Convert an intent to a DynamoDB item (numbers as Decimal, no nulls)."""
    record = intent.model_dump(by_alias=True)
    record["status"] = intent.status.value
    record["createdAt"] = intent.created_at.isoformat()
    record["updatedAt"] = intent.updated_at.isoformat()
    return {name: value for name, value in record.items() if value is not None}


def item_to_intent(item: Dict[str, Any]) -> Intent:
    record = dict(item)
    # boto3 hands every number back as Decimal
    for name in ("blockNumber", "responseNonce"):
        if record.get(name) is not None:
            record[name] = int(record[name])
    return Intent.from_record(record)


class DynamoIntentStore(IntentStore):
    """Intent store on a DynamoDB table."""

    def __init__(
        self,
        table_name: str = DEFAULT_TABLE_NAME,
        region: str = DEFAULT_AWS_REGION,
        table: Any = None
    ):
        """
        Initialize the DynamoDB store.

        Args:
            table_name: Table name
            region: AWS region
            table: Pre-built boto3 Table resource (skips client construction)

        Raises:
            StoreError: If boto3 is not installed
        """
        try:
            from botocore.exceptions import ClientError
        except ImportError as exc:
            raise StoreError(
                "boto3 package is required for the DynamoDB intent store. "
                "Install with: pip install pingpong-relayer[dynamodb]"
            ) from exc
        self._client_error = ClientError

        if table is None:
            import boto3
            table = boto3.resource("dynamodb", region_name=region).Table(table_name)
        self.table = table
        self.table_name = table_name

    def _is_condition_failure(self, error: Exception) -> bool:
        if not isinstance(error, self._client_error):
            return False
        return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"

    def _call(self, method: str, **kwargs: Any) -> Optional[Dict[str, Any]]:
        """Run one table call; None means the condition expression rejected it."""
        try:
            return getattr(self.table, method)(**kwargs)
        except Exception as e:
            if self._is_condition_failure(e):
                return None
            if isinstance(e, self._client_error):
                raise StoreError(f"DynamoDB {method} on {self.table_name} failed: {e}") from e
            raise

    async def _run(self, method: str, **kwargs: Any) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._call, method, **kwargs)

    async def get(self, key: str) -> Optional[Intent]:
        response = await self._run("get_item", Key={"key": key}, ConsistentRead=True)
        item = (response or {}).get("Item")
        return item_to_intent(item) if item else None

    async def create_if_absent(self, key: str, source_tx_hash: str, block_number: int) -> bool:
        item = intent_to_item(Intent.new(key=key, block_number=block_number, source_tx_hash=source_tx_hash))
        created = await self._run(
            "put_item",
            Item=item,
            ConditionExpression="attribute_not_exists(#k)",
            ExpressionAttributeNames={"#k": "key"},
        )
        if created is not None:
            logger.info(f"Created pending intent {key} (block {block_number})")
            return True

        revived = await self._run(
            "update_item",
            Key={"key": key},
            UpdateExpression="SET #st = :pending, updatedAt = :now REMOVE responseNonce, responseFeeRate",
            ConditionExpression="#st = :failed",
            ExpressionAttributeNames={"#st": "status"},
            ExpressionAttributeValues={
                ":pending": IntentStatus.PENDING.value,
                ":failed": IntentStatus.FAILED.value,
                ":now": utcnow().isoformat(),
            },
        )
        if revived is not None:
            logger.info(f"Revived failed intent {key}")
            return True
        logger.debug(f"Intent {key} already exists, create is a no-op")
        return False

    async def _guarded_update(self, key: str, update_expression: str, values: Dict[str, Any]) -> bool:
        """Update a non-confirmed intent; False if it is confirmed."""
        values = dict(values)
        values[":confirmed"] = IntentStatus.CONFIRMED.value
        values[":now"] = utcnow().isoformat()
        response = await self._run(
            "update_item",
            Key={"key": key},
            UpdateExpression=update_expression,
            ConditionExpression="attribute_exists(#k) AND #st <> :confirmed",
            ExpressionAttributeNames=_NAMES,
            ExpressionAttributeValues=values,
        )
        if response is not None:
            return True
        if await self.get(key) is None:
            raise IntentNotFoundError(f"Intent {key} does not exist")
        logger.info(f"Intent {key} already confirmed, update ignored")
        return False

    async def update_response_meta(self, key: str, nonce: int, fee_rate: Decimal) -> bool:
        return await self._guarded_update(
            key,
            "SET responseNonce = :nonce, responseFeeRate = :fee, updatedAt = :now",
            {":nonce": nonce, ":fee": Decimal(fee_rate)},
        )

    async def clear_response_meta(self, key: str) -> bool:
        return await self._guarded_update(key, "SET updatedAt = :now REMOVE responseNonce, responseFeeRate", {})

    async def mark_failed(self, key: str) -> bool:
        written = await self._guarded_update(
            key, "SET #st = :failed, updatedAt = :now", {":failed": IntentStatus.FAILED.value}
        )
        if written:
            logger.warning(f"Intent {key} marked failed")
        return written

    async def mark_confirmed(self, key: str, response_tx_hash: str) -> Intent:
        response = await self._run(
            "update_item",
            Key={"key": key},
            UpdateExpression="SET #st = :confirmed, responseTxHash = :hash, updatedAt = :now",
            ConditionExpression="attribute_exists(#k) AND (#st <> :confirmed OR responseTxHash = :hash)",
            ExpressionAttributeNames=_NAMES,
            ExpressionAttributeValues={
                ":confirmed": IntentStatus.CONFIRMED.value,
                ":hash": response_tx_hash,
                ":now": utcnow().isoformat(),
            },
            ReturnValues="ALL_NEW",
        )
        if response is not None:
            logger.info(f"Intent {key} confirmed by {response_tx_hash}")
            return item_to_intent(response["Attributes"])

        existing = await self.get(key)
        if existing is None:
            raise IntentNotFoundError(f"Intent {key} does not exist")
        raise IntentCorruptionError(key, existing.response_tx_hash, response_tx_hash)

    def _scan_all(self, **kwargs: Any) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        while True:
            response = self._call("scan", **kwargs) or {}
            items.extend(item for item in response.get("Items", []) if item.get("key") != CURSOR_KEY)
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    async def list_intents(self, status: Optional[IntentStatus] = None) -> List[Intent]:
        kwargs: Dict[str, Any] = {}
        if status is not None:
            kwargs = {
                "FilterExpression": "#st = :status",
                "ExpressionAttributeNames": {"#st": "status"},
                "ExpressionAttributeValues": {":status": status.value},
            }
        items = await asyncio.to_thread(self._scan_all, **kwargs)
        return sort_intents([item_to_intent(item) for item in items])

    async def list_pending(self) -> List[Intent]:
        items = await asyncio.to_thread(
            self._scan_all,
            FilterExpression="#st <> :confirmed",
            ExpressionAttributeNames={"#st": "status"},
            ExpressionAttributeValues={":confirmed": IntentStatus.CONFIRMED.value},
        )
        return sort_intents([item_to_intent(item) for item in items])

    async def get_last_processed_block(self) -> int:
        response = await self._run("get_item", Key={"key": CURSOR_KEY}, ConsistentRead=True)
        item = (response or {}).get("Item") or {}
        return int(item.get("blockNumber", 0))

    async def set_last_processed_block(self, block_number: int) -> bool:
        moved = await self._run(
            "update_item",
            Key={"key": CURSOR_KEY},
            UpdateExpression="SET blockNumber = :block, updatedAt = :now",
            ConditionExpression="attribute_not_exists(blockNumber) OR blockNumber < :block",
            ExpressionAttributeValues={":block": block_number, ":now": utcnow().isoformat()},
        )
        return moved is not None
