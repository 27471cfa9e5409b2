"""AWS Lambda handler for portal synchronization and recurring task jobs."""
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict

from portal.portal_client import PortalClient
from scheduler.recurring_tasks import RecurringTaskProcessor, summarize
from storage.dynamodb_store import DynamoDBRecordStore
from storage.task_store import DynamoDBTaskStore
from sync.models import DuplicatePolicy, SyncContext
from sync.reconciliation import ReconciliationEngine, plan_summary
from sync.record_mapper import (
    PROJECT_CROSS_REFERENCES,
    TICKET_CROSS_REFERENCES,
    WEBSITE_CROSS_REFERENCES,
    PortalRecordMapper,
)


DEFAULT_PORTAL_BASE_URL = 'https://portal.webfusion.cz'

SYNC_PROJECTS = 'sync-projects'
SYNC_WEBSITES = 'sync-websites'
SYNC_TICKETS = 'sync-tickets'
PROCESS_RECURRING_TASKS = 'process-recurring-tasks'


@dataclass(frozen=True)
class PortalJob:
    """Wiring of one portal synchronization job."""
    url_env: str
    default_path: str
    table_env: str
    default_table: str
    fetch_method: str
    map_method: str
    cross_references: tuple
    delete_missing: bool


PORTAL_JOBS = {
    SYNC_PROJECTS: PortalJob(
        url_env='PROJECTS_PORTAL_URL',
        default_path='/wp-json/wp/v2/projekt',
        table_env='PROJECTS_TABLE',
        default_table='projects',
        fetch_method='fetch_projects',
        map_method='map_projects',
        cross_references=tuple(PROJECT_CROSS_REFERENCES),
        delete_missing=True
    ),
    SYNC_WEBSITES: PortalJob(
        url_env='WEBSITES_PORTAL_URL',
        default_path='/wp-json/wp/v2/web',
        table_env='WEBSITES_TABLE',
        default_table='websites',
        fetch_method='fetch_websites',
        map_method='map_websites',
        cross_references=tuple(WEBSITE_CROSS_REFERENCES),
        delete_missing=True
    ),
    SYNC_TICKETS: PortalJob(
        url_env='TICKETS_PORTAL_URL',
        default_path='/wp-json/wp/v2/pozadavek-na-podporu',
        table_env='TICKETS_TABLE',
        default_table='support-tickets',
        fetch_method='fetch_tickets',
        map_method='map_tickets',
        cross_references=tuple(TICKET_CROSS_REFERENCES),
        delete_missing=False
    ),
}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    RESERVED = frozenset(vars(logging.makeLogRecord({})).keys()) | {'message', 'asctime'}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including fields passed via extra."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in self.RESERVED and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler, dispatching on event["job"] (or the JOB variable).

    Args:
        event: EventBridge schedule or manual invocation payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and a JSON body
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    logger = logging.getLogger(__name__)

    event = event or {}
    job = event.get('job') or os.environ.get('JOB', '')

    if job == PROCESS_RECURRING_TASKS:
        return run_recurring_tasks(event)
    if job in PORTAL_JOBS:
        return run_portal_sync(job, event)

    logger.error(f"Unknown job requested: {job!r}")
    return _response(400, {
        'message': 'Unknown job',
        'job': job,
        'available_jobs': sorted(PORTAL_JOBS) + [PROCESS_RECURRING_TASKS]
    })


def run_portal_sync(job_name: str, event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fetch portal records, reconcile them with the local table and apply the plan.

    Args:
        job_name: Key of PORTAL_JOBS
        event: Invocation payload, may carry a ticket "limit"

    Returns:
        Response dict with statusCode and summary statistics
    """
    logger = logging.getLogger(__name__)
    job = PORTAL_JOBS[job_name]

    base_url = os.environ.get('PORTAL_BASE_URL', DEFAULT_PORTAL_BASE_URL).rstrip('/')
    portal_url = os.environ.get(job.url_env) or base_url + job.default_path
    table_name = os.environ.get(job.table_env, job.default_table)
    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '30'))

    start_time = time.time()
    logger.info(
        f"Portal sync started",
        extra={'job': job_name, 'portal_url': portal_url, 'table_name': table_name}
    )

    try:
        policy = DuplicatePolicy(os.environ.get('DUPLICATE_POLICY', 'first').lower())
        client = PortalClient(timeout=timeout_seconds)
        mapper = PortalRecordMapper(portal_base_url=base_url)
        store = DynamoDBRecordStore(table_name=table_name)
        engine = ReconciliationEngine()

        try:
            fetch = getattr(client, job.fetch_method)
            if job_name == SYNC_TICKETS:
                raw_items = fetch(portal_url, limit=int(event.get('limit') or 0))
            else:
                raw_items = fetch(portal_url)
            logger.info(f"Fetched {len(raw_items)} items from portal")
        except Exception as e:
            # Nothing to reconcile without portal data
            logger.error(
                f"Failed to fetch portal records after retries: {str(e)}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            return _error_response('Failed to fetch portal records', e, start_time)

        records = getattr(mapper, job.map_method)(raw_items)

        try:
            current = store.get_all_records()
            sync_context = SyncContext(
                lookups=build_lookups(job_name, store),
                cross_references=list(job.cross_references),
                duplicate_policy=policy,
                delete_missing=job.delete_missing
            )
        except Exception as e:
            logger.error(
                f"Failed to read local records: {str(e)}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            return _error_response('Failed to read local records', e, start_time)

        plan = engine.reconcile(records, current, sync_context)
        sync_result = store.apply_plan(plan)

        duration = time.time() - start_time
        logger.info(
            f"Portal sync completed",
            extra={
                'job': job_name,
                'duration_seconds': round(duration, 2),
                'records_added': sync_result.added,
                'records_updated': sync_result.updated,
                'records_deleted': sync_result.deleted,
                'records_failed': sync_result.failed
            }
        )

        return _response(200, {
            'message': 'Sync completed successfully',
            'job': job_name,
            'statistics': {
                'raw_items_fetched': len(raw_items),
                'valid_records_mapped': len(records),
                'added': sync_result.added,
                'updated': sync_result.updated,
                'deleted': sync_result.deleted,
                'skipped': sync_result.skipped,
                'failed': sync_result.failed,
                'plan': plan_summary(plan),
                'duration_seconds': round(duration, 2)
            },
            'unresolved_references': plan.unresolved,
            'errors': sync_result.errors
        })

    except Exception as e:
        logger.error(
            f"Portal sync failed: {str(e)}",
            extra={'job': job_name, 'error_type': type(e).__name__},
            exc_info=True
        )
        return _error_response('Sync failed', e, start_time)


def build_lookups(job_name: str, store: DynamoDBRecordStore) -> Dict[str, Dict[str, Any]]:
    """
    Load the cross-reference tables a job needs, once per pass.

    Args:
        job_name: Key of PORTAL_JOBS
        store: Store of the job's own table

    Returns:
        Lookup tables keyed by CrossReference.table
    """
    if job_name == SYNC_WEBSITES:
        users = DynamoDBRecordStore(os.environ.get('USERS_TABLE', 'user-roles'))
        return {
            'admins': users.build_lookup('role', 'user_id', where={'role': 'admin'})
        }

    if job_name == SYNC_TICKETS:
        operators = DynamoDBRecordStore(
            os.environ.get('OPERATOR_MAPPINGS_TABLE', 'operator-user-mappings')
        )
        clients = DynamoDBRecordStore(os.environ.get('CLIENTS_TABLE', 'clients'))
        return {
            'operators': operators.build_lookup('external_operator_id', 'user_id'),
            'clients': clients.build_lookup('portal_id', 'record_id'),
            # Website ids already linked on stored tickets
            'websites': store.build_lookup('website_portal_id', 'website_id'),
        }

    return {}


def run_recurring_tasks(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create instances of due recurring tasks.

    Args:
        event: Invocation payload (unused)

    Returns:
        Response dict with statusCode and created occurrences
    """
    logger = logging.getLogger(__name__)
    table_name = os.environ.get('TASKS_TABLE', 'tasks')
    start_time = time.time()

    try:
        processor = RecurringTaskProcessor(DynamoDBTaskStore(table_name=table_name))
        result = processor.process_due_tasks()

        duration = time.time() - start_time
        logger.info(
            f"Recurring task processing completed",
            extra={
                'duration_seconds': round(duration, 2),
                'tasks_processed': result.processed,
                'tasks_skipped': result.skipped,
                'tasks_failed': result.failed
            }
        )

        return _response(200, {
            'message': 'Recurring tasks processed',
            'processed': result.processed,
            'skipped': result.skipped,
            'failed': result.failed,
            'tasks': summarize(result),
            'errors': result.errors,
            'duration_seconds': round(duration, 2)
        })

    except Exception as e:
        logger.error(
            f"Recurring task processing failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _error_response('Recurring task processing failed', e, start_time)


def _error_response(message: str, error: Exception, start_time: float) -> Dict[str, Any]:
    return _response(500, {
        'message': message,
        'error': str(error),
        'error_type': type(error).__name__,
        'duration_seconds': round(time.time() - start_time, 2)
    })


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'body': json.dumps(body, default=str)
    }
