"""Generation of task instances from recurring task templates."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from scheduler.models import OccurrenceResult, RecurrenceRunResult, RecurringTask
from scheduler.recurrence import compute_next_occurrence, format_occurrence, parse_occurrence

logger = logging.getLogger(__name__)


class RecurringTaskProcessor:
    """Creates the next task instance for every due recurring template."""

    # Template attributes copied onto each generated instance
    INSTANCE_FIELDS = (
        'description',
        'folder_id',
        'category_id',
        'parent_task_id',
        'assigned_to',
        'created_by',
        'priority',
        'position',
    )

    def __init__(self, task_store):
        """
        Initialize the processor.

        Args:
            task_store: Store providing get_recurring_tasks, create_task
                and update_next_occurrence
        """
        self.task_store = task_store

    def process_due_tasks(self, now: Optional[datetime] = None) -> RecurrenceRunResult:
        """
        Create instances for all due recurring tasks and advance their schedule.

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            RecurrenceRunResult summarizing the run
        """
        now = now or datetime.now(timezone.utc)
        result = RecurrenceRunResult()

        templates = self.task_store.get_recurring_tasks()
        due_tasks = [task for task in templates if self.is_due(task, now)]
        logger.info(
            f"Found {len(due_tasks)} due recurring tasks out of {len(templates)}"
        )

        for task in due_tasks:
            if self.has_ended(task, now):
                logger.info(f"Recurrence of task {task.task_id} has ended, skipping")
                result.skipped += 1
                continue

            self._process_task(task, now, result)

        logger.info(
            f"Recurring tasks processed: {result.processed} created, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return result

    def _process_task(
        self,
        task: RecurringTask,
        now: datetime,
        result: RecurrenceRunResult
    ) -> None:
        try:
            seed = self.seed_date(task, now)
            occurrence = compute_next_occurrence(seed, task.rule)
            following = compute_next_occurrence(occurrence, task.rule)
            occurrence_iso = format_occurrence(occurrence)
            following_iso = format_occurrence(following)
        except Exception as e:
            error_msg = f"Error computing next occurrence of {task.task_id}: {e}"
            logger.error(error_msg)
            result.failed += 1
            result.errors.append(error_msg)
            return

        try:
            new_task_id = self.task_store.create_task(
                self.build_instance(task, occurrence_iso)
            )
        except Exception as e:
            error_msg = f"Error creating task from {task.task_id}: {e}"
            logger.error(error_msg)
            result.failed += 1
            result.errors.append(error_msg)
            return

        try:
            self.task_store.update_next_occurrence(task.task_id, following_iso)
        except Exception as e:
            error_msg = f"Error updating next occurrence of {task.task_id}: {e}"
            logger.error(error_msg)
            result.errors.append(error_msg)

        result.processed += 1
        result.occurrences.append(
            OccurrenceResult(
                task_id=task.task_id,
                new_task_id=new_task_id,
                occurrence=occurrence_iso,
                next_occurrence=following_iso
            )
        )

    @staticmethod
    def is_due(task: RecurringTask, now: datetime) -> bool:
        """A template is due when it has no next occurrence or it has passed."""
        next_occurrence = parse_occurrence(task.next_occurrence)
        return next_occurrence is None or next_occurrence <= now

    @staticmethod
    def has_ended(task: RecurringTask, now: datetime) -> bool:
        end_date = parse_occurrence(task.recurrence_end_date)
        return end_date is not None and end_date < now

    @staticmethod
    def seed_date(task: RecurringTask, now: datetime) -> datetime:
        """Previous occurrence, else the due date, else now."""
        return (
            parse_occurrence(task.next_occurrence)
            or parse_occurrence(task.due_date)
            or now
        )

    def build_instance(self, task: RecurringTask, occurrence: str) -> Dict[str, Any]:
        """
        Build the attributes of a new task instance.

        Args:
            task: Recurring template
            occurrence: ISO-8601 due date of the instance

        Returns:
            Attribute dictionary for the tasks table
        """
        instance = {
            name: task.attributes.get(name)
            for name in self.INSTANCE_FIELDS
        }
        instance.update({
            'title': task.title,
            'status': 'todo',
            'due_date': occurrence,
            'is_recurring': False,
            'parent_recurring_task_id': task.task_id,
        })
        return instance


def summarize(result: RecurrenceRunResult) -> List[Dict[str, str]]:
    """Occurrences as plain dictionaries for JSON responses."""
    return [
        {
            'taskId': item.task_id,
            'newTaskId': item.new_task_id,
            'occurrence': item.occurrence,
            'nextOccurrence': item.next_occurrence,
        }
        for item in result.occurrences
    ]
