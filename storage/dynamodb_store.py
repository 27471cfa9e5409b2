"""DynamoDB persistence for synchronized portal records."""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from sync.models import ExternalRecord, LocalRecord, ReconciliationPlan, SyncResult

logger = logging.getLogger(__name__)


class DynamoDBRecordStore:
    """Store for one table of records mirrored from the portal."""

    KEY_FIELD = 'record_id'
    EXTERNAL_ID_FIELD = 'external_id'
    SYNC_FIELD = 'last_sync_at'

    def __init__(self, table_name: str):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the DynamoDB table
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBRecordStore for table: {table_name}")

    def get_all_records(self) -> List[LocalRecord]:
        """
        Retrieve all stored records.

        Returns:
            List of LocalRecord objects, external id None for unmapped rows
        """
        logger.info(f"Scanning {self.table_name} for all records")
        records = []

        for item in scan_all(self.table):
            item = from_dynamo(item)
            local_id = item.pop(self.KEY_FIELD, None)
            if local_id is None:
                logger.warning(f"Skipping item without {self.KEY_FIELD} in {self.table_name}")
                continue
            external_id = item.pop(self.EXTERNAL_ID_FIELD, None)
            records.append(
                LocalRecord(
                    local_id=str(local_id),
                    external_id=str(external_id) if external_id is not None else None,
                    fields=item
                )
            )

        logger.info(f"Retrieved {len(records)} records from {self.table_name}")
        return records

    def build_lookup(
        self,
        key_field: str,
        value_field: str,
        where: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Build a read-only mapping from one attribute to another.

        Args:
            key_field: Attribute used as lookup key (stringified)
            value_field: Attribute returned for the key
            where: Optional attribute equality filter

        Returns:
            Dictionary of key to value, first item wins on repeated keys
        """
        lookup: Dict[str, Any] = {}

        for item in scan_all(self.table):
            item = from_dynamo(item)
            if where and any(item.get(name) != value for name, value in where.items()):
                continue
            key = item.get(key_field)
            value = item.get(value_field)
            if key is None or value is None:
                continue
            lookup.setdefault(str(key), value)

        logger.info(
            f"Built lookup {key_field} -> {value_field} from {self.table_name} "
            f"with {len(lookup)} entries"
        )
        return lookup

    def apply_plan(self, plan: ReconciliationPlan) -> SyncResult:
        """
        Apply a reconciliation plan record by record.

        Inserts run first, then updates, then deletes. A failed record is
        counted and reported without stopping the rest.

        Args:
            plan: Plan produced by the reconciliation engine

        Returns:
            SyncResult with per-record outcome counts and error messages
        """
        result = SyncResult(skipped=len(plan.unchanged))

        for record in plan.to_insert:
            try:
                self.insert_record(record)
                result.added += 1
            except (ClientError, TypeError) as e:
                self._record_failure(result, f"Error inserting {record.external_id}: {e}")

        for local, record in plan.to_update:
            try:
                self.update_record(local, record)
                result.updated += 1
            except (ClientError, TypeError) as e:
                self._record_failure(result, f"Error updating {record.external_id}: {e}")

        for local in plan.to_delete:
            try:
                self.delete_record(local)
                result.deleted += 1
            except ClientError as e:
                self._record_failure(result, f"Error deleting {local.local_id}: {e}")

        logger.info(
            f"Sync complete for {self.table_name}: {result.added} added, "
            f"{result.updated} updated, {result.deleted} deleted, "
            f"{result.failed} failed"
        )
        return result

    def insert_record(self, record: ExternalRecord) -> str:
        """
        Insert a portal record under a new local id.

        Insert-only fields are written first so portal fields win.

        Returns:
            The generated local id
        """
        local_id = str(uuid.uuid4())
        values = dict(record.insert_fields)
        values.update(record.fields)
        item = {name: to_dynamo(value) for name, value in values.items()}
        item.update({
            self.KEY_FIELD: local_id,
            self.EXTERNAL_ID_FIELD: record.external_id,
            self.SYNC_FIELD: _now_iso(),
        })
        self.table.put_item(
            Item=item,
            ConditionExpression=f'attribute_not_exists({self.KEY_FIELD})'
        )
        return local_id

    def update_record(self, local: LocalRecord, record: ExternalRecord) -> None:
        """Overwrite the portal-provided attributes of a stored record."""
        values = dict(record.fields)
        values[self.SYNC_FIELD] = _now_iso()

        names = {}
        attribute_values = {}
        assignments = []
        for index, (name, value) in enumerate(values.items()):
            names[f'#f{index}'] = name
            attribute_values[f':v{index}'] = to_dynamo(value)
            assignments.append(f'#f{index} = :v{index}')

        self.table.update_item(
            Key={self.KEY_FIELD: local.local_id},
            UpdateExpression='SET ' + ', '.join(assignments),
            ConditionExpression=f'attribute_exists({self.KEY_FIELD})',
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=attribute_values
        )

    def delete_record(self, local: LocalRecord) -> None:
        self.table.delete_item(Key={self.KEY_FIELD: local.local_id})

    @staticmethod
    def _record_failure(result: SyncResult, message: str) -> None:
        logger.error(message)
        result.failed += 1
        result.errors.append(message)


def scan_all(table, **kwargs) -> List[Dict[str, Any]]:
    """
    Scan a table, following LastEvaluatedKey pagination.

    Raises:
        ClientError: If the scan fails
    """
    try:
        response = table.scan(**kwargs)
        items = response.get('Items', [])

        while 'LastEvaluatedKey' in response:
            response = table.scan(
                ExclusiveStartKey=response['LastEvaluatedKey'],
                **kwargs
            )
            items.extend(response.get('Items', []))

        return items

    except ClientError as e:
        logger.error(f"Error scanning DynamoDB table {table.name}: {e}")
        raise


def to_dynamo(value: Any) -> Any:
    """Convert floats to Decimal, recursing into lists and dicts."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, list):
        return [to_dynamo(item) for item in value]
    if isinstance(value, dict):
        return {key: to_dynamo(item) for key, item in value.items()}
    return value


def from_dynamo(value: Any) -> Any:
    """Convert Decimal back to int or float, recursing into lists, sets and dicts."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (list, set)):
        return [from_dynamo(item) for item in value]
    if isinstance(value, dict):
        return {key: from_dynamo(item) for key, item in value.items()}
    return value


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
