"""DynamoDB persistence for tasks and recurring task templates."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr

from scheduler.models import RecurrenceRule, RecurringTask
from storage.dynamodb_store import from_dynamo, scan_all, to_dynamo

logger = logging.getLogger(__name__)


class DynamoDBTaskStore:
    """Manager for the tasks table."""

    KEY_FIELD = 'task_id'

    def __init__(self, table_name: str):
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBTaskStore for table: {table_name}")

    def get_recurring_tasks(self) -> List[RecurringTask]:
        """
        Retrieve all recurring task templates.

        Returns:
            List of RecurringTask objects
        """
        items = scan_all(self.table, FilterExpression=Attr('is_recurring').eq(True))
        tasks = []

        for item in items:
            task = self._item_to_recurring_task(from_dynamo(item))
            if task:
                tasks.append(task)

        logger.info(f"Retrieved {len(tasks)} recurring tasks from {self.table_name}")
        return tasks

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        """
        Read a single task by id.

        Args:
            task_id: Key of the task

        Returns:
            Task attributes with Decimals converted back, or None if absent
        """
        response = self.table.get_item(Key={self.KEY_FIELD: task_id})
        item = response.get('Item')
        return from_dynamo(item) if item else None

    def create_task(self, attributes: Dict[str, Any]) -> str:
        """
        Insert a new task.

        Args:
            attributes: Task attributes without the key

        Returns:
            Generated task id

        Raises:
            ClientError: If the write fails
        """
        task_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()
        item = {
            name: to_dynamo(value)
            for name, value in attributes.items()
            if value is not None
        }
        item.update({
            self.KEY_FIELD: task_id,
            'created_at': now,
            'updated_at': now,
        })
        self.table.put_item(Item=item)
        return task_id

    def update_next_occurrence(self, task_id: str, next_occurrence: str) -> None:
        """
        Store the next occurrence of a recurring template.

        Raises:
            ClientError: If the task does not exist or the write fails
        """
        self.table.update_item(
            Key={self.KEY_FIELD: task_id},
            UpdateExpression='SET next_occurrence = :next, updated_at = :now',
            ConditionExpression=f'attribute_exists({self.KEY_FIELD})',
            ExpressionAttributeValues={
                ':next': next_occurrence,
                ':now': datetime.now(timezone.utc).isoformat()
            }
        )

    def _item_to_recurring_task(self, item: dict) -> Optional[RecurringTask]:
        """
        Convert a tasks table item to a RecurringTask.

        Args:
            item: Item with Decimals already converted

        Returns:
            RecurringTask or None if the item is missing required attributes
        """
        try:
            rule = RecurrenceRule.from_task_fields(
                rule=item.get('recurrence_rule'),
                interval=item.get('recurrence_interval'),
                days_of_week=item.get('recurrence_days_of_week'),
                day_of_month=item.get('recurrence_day_of_month'),
                month=item.get('recurrence_month')
            )
            return RecurringTask(
                task_id=item[self.KEY_FIELD],
                title=item['title'],
                rule=rule,
                next_occurrence=item.get('next_occurrence'),
                due_date=item.get('due_date'),
                recurrence_end_date=item.get('recurrence_end_date'),
                attributes=item
            )
        except KeyError as e:
            logger.warning(f"Failed to convert item to RecurringTask: missing {e}")
            return None
