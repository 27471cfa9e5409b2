"""Unit tests for recurring task processing."""
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from scheduler.models import RecurrenceRule, RecurringTask
from scheduler.recurring_tasks import RecurringTaskProcessor, summarize
from storage.task_store import DynamoDBTaskStore


TABLE_NAME = 'test-tasks'
NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
WEDNESDAY_OCCURRENCE = datetime(2024, 1, 17, 9, 0, tzinfo=timezone.utc)
FRIDAY_OCCURRENCE = datetime(2024, 1, 19, 9, 0, tzinfo=timezone.utc)


def recurring_task(task_id='t1', **kwargs):
    defaults = {
        'title': 'Weekly report',
        'rule': RecurrenceRule(rule='weekly', days_of_week=frozenset({1, 3, 5})),
        'attributes': {'folder_id': 'f1', 'priority': 'high', 'assigned_to': 'u1'},
    }
    defaults.update(kwargs)
    return RecurringTask(task_id=task_id, **defaults)


@pytest.fixture
def mock_store():
    store = Mock()
    store.create_task.return_value = 'new-1'
    return store


class TestRecurringTaskProcessor:
    """Test cases for RecurringTaskProcessor with a mocked store."""

    def test_creates_instance_and_advances_schedule(self, mock_store):
        """Test that a due task produces one instance and a new next occurrence."""
        mock_store.get_recurring_tasks.return_value = [
            recurring_task(next_occurrence='2024-01-15T09:00:00.000Z')
        ]

        result = RecurringTaskProcessor(mock_store).process_due_tasks(NOW)

        assert result.processed == 1
        instance = mock_store.create_task.call_args[0][0]
        assert instance['title'] == 'Weekly report'
        assert instance['status'] == 'todo'
        assert instance['due_date'] == '2024-01-17T09:00:00.000Z'
        assert instance['parent_recurring_task_id'] == 't1'
        assert instance['is_recurring'] is False
        assert instance['folder_id'] == 'f1'
        assert instance['priority'] == 'high'
        mock_store.update_next_occurrence.assert_called_once_with(
            't1', '2024-01-19T09:00:00.000Z'
        )
        assert summarize(result) == [{
            'taskId': 't1',
            'newTaskId': 'new-1',
            'occurrence': '2024-01-17T09:00:00.000Z',
            'nextOccurrence': '2024-01-19T09:00:00.000Z',
        }]

    def test_future_task_not_due(self, mock_store):
        """Test that templates scheduled in the future are ignored."""
        mock_store.get_recurring_tasks.return_value = [
            recurring_task(next_occurrence='2024-02-01T00:00:00.000Z')
        ]

        result = RecurringTaskProcessor(mock_store).process_due_tasks(NOW)

        assert result.processed == 0
        mock_store.create_task.assert_not_called()

    def test_seed_falls_back_to_due_date(self, mock_store):
        """Test that a template without next occurrence is seeded from its due date."""
        mock_store.get_recurring_tasks.return_value = [
            recurring_task(
                rule=RecurrenceRule(rule='daily', interval=2),
                due_date='2024-01-10T08:00:00.000Z'
            )
        ]

        RecurringTaskProcessor(mock_store).process_due_tasks(NOW)

        instance = mock_store.create_task.call_args[0][0]
        assert instance['due_date'] == '2024-01-12T08:00:00.000Z'

    def test_seed_falls_back_to_now(self, mock_store):
        """Test that a template with no dates is seeded from now."""
        mock_store.get_recurring_tasks.return_value = [
            recurring_task(rule=RecurrenceRule(rule='daily'))
        ]

        RecurringTaskProcessor(mock_store).process_due_tasks(NOW)

        instance = mock_store.create_task.call_args[0][0]
        assert instance['due_date'] == '2024-01-16T12:00:00.000Z'

    def test_ended_recurrence_skipped(self, mock_store):
        """Test that templates past their end date are skipped."""
        mock_store.get_recurring_tasks.return_value = [
            recurring_task(recurrence_end_date='2024-01-01T00:00:00.000Z')
        ]

        result = RecurringTaskProcessor(mock_store).process_due_tasks(NOW)

        assert result.skipped == 1
        assert result.processed == 0
        mock_store.create_task.assert_not_called()

    def test_create_failure_does_not_advance(self, mock_store):
        """Test that a failed insert is counted and the schedule kept."""
        mock_store.get_recurring_tasks.return_value = [
            recurring_task('t1'), recurring_task('t2')
        ]
        mock_store.create_task.side_effect = [Exception('write failed'), 'new-2']

        result = RecurringTaskProcessor(mock_store).process_due_tasks(NOW)

        assert result.failed == 1
        assert result.processed == 1
        assert 'Error creating task from t1' in result.errors[0]
        mock_store.update_next_occurrence.assert_called_once()
        assert mock_store.update_next_occurrence.call_args[0][0] == 't2'

    def test_advance_failure_reported(self, mock_store):
        """Test that a failed schedule update is reported but counted as processed."""
        mock_store.get_recurring_tasks.return_value = [recurring_task()]
        mock_store.update_next_occurrence.side_effect = Exception('update failed')

        result = RecurringTaskProcessor(mock_store).process_due_tasks(NOW)

        assert result.processed == 1
        assert result.failed == 0
        assert 'Error updating next occurrence of t1' in result.errors[0]

    def test_bad_rule_does_not_abort_run(self, mock_store):
        """Test that a failing computation is counted and later tasks still run."""
        mock_store.get_recurring_tasks.return_value = [
            recurring_task('t1'), recurring_task('t2')
        ]

        with patch(
            'scheduler.recurring_tasks.compute_next_occurrence',
            side_effect=[ValueError('bad rule'), WEDNESDAY_OCCURRENCE, FRIDAY_OCCURRENCE]
        ):
            result = RecurringTaskProcessor(mock_store).process_due_tasks(NOW)

        assert result.failed == 1
        assert result.processed == 1
        assert 'Error computing next occurrence of t1' in result.errors[0]
        mock_store.create_task.assert_called_once()
        assert mock_store.update_next_occurrence.call_args[0][0] == 't2'

    def test_directly_built_bad_rule_processed(self, mock_store):
        """Test that an out-of-range month still yields an occurrence."""
        mock_store.get_recurring_tasks.return_value = [
            recurring_task(
                rule=RecurrenceRule(rule='yearly', month=13, day_of_month=-1),
                next_occurrence='2024-01-15T09:00:00.000Z'
            )
        ]

        result = RecurringTaskProcessor(mock_store).process_due_tasks(NOW)

        assert result.processed == 1
        assert result.failed == 0
        instance = mock_store.create_task.call_args[0][0]
        assert instance['due_date'] == '2025-01-15T09:00:00.000Z'

    def test_unknown_rule_repeats_seed(self, mock_store):
        """Test that an unknown rule keeps the date unchanged."""
        mock_store.get_recurring_tasks.return_value = [
            recurring_task(
                rule=RecurrenceRule(rule='hourly'),
                next_occurrence='2024-01-15T09:00:00.000Z'
            )
        ]

        RecurringTaskProcessor(mock_store).process_due_tasks(NOW)

        instance = mock_store.create_task.call_args[0][0]
        assert instance['due_date'] == '2024-01-15T09:00:00.000Z'


@pytest.fixture
def tasks_table(monkeypatch):
    """Create a mock tasks table for testing."""
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
        table = dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[{'AttributeName': 'task_id', 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': 'task_id', 'AttributeType': 'S'}],
            BillingMode='PAY_PER_REQUEST'
        )
        yield table


class TestDynamoDBTaskStore:
    """Test cases for the tasks table store."""

    def test_get_recurring_tasks(self, tasks_table):
        """Test that only recurring templates are returned with parsed rules."""
        tasks_table.put_item(Item={
            'task_id': 't1',
            'title': 'Monthly invoice',
            'is_recurring': True,
            'recurrence_rule': 'monthly',
            'recurrence_interval': 1,
            'recurrence_day_of_month': 31,
            'next_occurrence': '2024-01-31T09:00:00.000Z',
        })
        tasks_table.put_item(Item={'task_id': 't2', 'title': 'One-off', 'is_recurring': False})
        tasks_table.put_item(Item={'task_id': 't3', 'is_recurring': True})

        tasks = DynamoDBTaskStore(TABLE_NAME).get_recurring_tasks()

        assert [task.task_id for task in tasks] == ['t1']
        assert tasks[0].rule == RecurrenceRule(rule='monthly', interval=1, day_of_month=31)
        assert tasks[0].next_occurrence == '2024-01-31T09:00:00.000Z'

    def test_create_task_drops_none(self, tasks_table):
        """Test task creation."""
        store = DynamoDBTaskStore(TABLE_NAME)

        task_id = store.create_task({'title': 'Instance', 'folder_id': None, 'position': 2.5})

        item = store.get_task(task_id)
        assert item['title'] == 'Instance'
        assert item['position'] == 2.5
        assert 'folder_id' not in item
        assert 'created_at' in item

    def test_update_next_occurrence(self, tasks_table):
        """Test schedule update of an existing template."""
        tasks_table.put_item(Item={'task_id': 't1', 'title': 'T', 'is_recurring': True})
        store = DynamoDBTaskStore(TABLE_NAME)

        store.update_next_occurrence('t1', '2024-02-01T00:00:00.000Z')

        assert store.get_task('t1')['next_occurrence'] == '2024-02-01T00:00:00.000Z'

    def test_update_next_occurrence_missing_task(self, tasks_table):
        """Test that updating an unknown task raises ClientError."""
        with pytest.raises(ClientError):
            DynamoDBTaskStore(TABLE_NAME).update_next_occurrence('missing', '2024-02-01')

    def test_full_run_against_table(self, tasks_table):
        """Test processing due templates end to end against the table."""
        tasks_table.put_item(Item={
            'task_id': 't1',
            'title': 'Monthly invoice',
            'is_recurring': True,
            'recurrence_rule': 'monthly',
            'recurrence_day_of_month': 31,
            'next_occurrence': '2024-01-31T09:00:00.000Z',
            'folder_id': 'finance',
        })
        store = DynamoDBTaskStore(TABLE_NAME)
        now = datetime(2024, 2, 1, tzinfo=timezone.utc)

        result = RecurringTaskProcessor(store).process_due_tasks(now)

        assert result.processed == 1
        instance = store.get_task(result.occurrences[0].new_task_id)
        assert instance['due_date'] == '2024-02-29T09:00:00.000Z'
        assert instance['folder_id'] == 'finance'
        assert instance['parent_recurring_task_id'] == 't1'
        assert store.get_task('t1')['next_occurrence'] == '2024-03-31T09:00:00.000Z'

        second = RecurringTaskProcessor(store).process_due_tasks(now)
        assert second.processed == 0
