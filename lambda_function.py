"""AWS Lambda handler for CCB event and attendance harvesting."""
import json
import logging
import os
import time
from datetime import date, timedelta
from typing import Any, Dict, Optional

from harvester.ccb_harvester import CCBHarvester
from harvester.config import HarvestConfig
from harvester.errors import ConfigurationError, PaginationError
from processor.models import HarvestRequest
from storage.link_store import LinkRowStore


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


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


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes')
    return bool(value)


def _optional_number(value: Any, cast) -> Optional[Any]:
    if value is None or value == '':
        return None
    return cast(value)


def build_request(event: Dict[str, Any], days_back: int) -> HarvestRequest:
    """
    Build a HarvestRequest from the invocation payload.

    Missing dates default to the last `days_back` days ending today.
    Group ids may be a list, a number or a comma-separated string; each id
    is coerced to a string.
    """
    today = date.today()
    group_ids = event.get('group_ids') or event.get('group_id')
    if isinstance(group_ids, (str, int)):
        group_ids = str(group_ids).split(',')
    group_ids = [str(g).strip() for g in (group_ids or []) if str(g).strip()]

    return HarvestRequest(
        start_date=event.get('start_date') or (today - timedelta(days=days_back)).isoformat(),
        end_date=event.get('end_date') or today.isoformat(),
        group_prefix=event.get('group_prefix'),
        group_ids=group_ids or None,
        event_id=str(event['event_id']) if event.get('event_id') else None,
        include_attendance=_as_bool(event.get('include_attendance', False)),
        include_attendees=_as_bool(event.get('include_attendees', False))
    )


def _error_response(status: int, message: str, error: Exception, start_time: float) -> Dict[str, Any]:
    return {
        'statusCode': status,
        'body': json.dumps({
            'message': message,
            'error': str(error),
            'error_type': type(error).__name__,
            'duration_seconds': round(time.time() - start_time, 2)
        })
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler for a CCB harvest run.

    Args:
        event: Invocation payload (group_prefix or group_ids, start_date,
            end_date, include_attendance, include_attendees, event_id and
            optional page_size / concurrency / timeout_seconds overrides)
        context: Lambda context object

    Returns:
        Response dict with statusCode and the harvested rows
    """
    event = event or {}
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    table_name = os.environ.get('TABLE_NAME')
    days_back = int(os.environ.get('DAYS_BACK', '14'))

    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    logger.info("Lambda execution started")

    try:
        request = build_request(event, days_back)
        config = HarvestConfig.from_env().with_overrides(
            page_size=_optional_number(event.get('page_size'), int),
            concurrency=_optional_number(event.get('concurrency'), int),
            timeout=_optional_number(event.get('timeout_seconds'), float)
        )
        harvester = CCBHarvester(config)
    except ConfigurationError as e:
        logger.error(f"Invalid CCB configuration: {e}", exc_info=True)
        return _error_response(500, 'CCB client configuration failed', e, start_time)
    except ValueError as e:
        logger.warning(f"Invalid harvest parameters: {e}")
        return _error_response(400, 'Invalid harvest parameters', e, start_time)

    try:
        result = harvester.harvest(request)
    except ValueError as e:
        logger.warning(f"Invalid harvest parameters: {e}")
        return _error_response(400, 'Invalid harvest parameters', e, start_time)
    except PaginationError as e:
        logger.error(
            f"Failed to harvest from CCB: {e}",
            extra={'error_type': type(e.cause).__name__},
            exc_info=True
        )
        return _error_response(500, f"Failed to harvest CCB {e.service}", e, start_time)
    except Exception as e:
        logger.error(f"Lambda execution failed: {e}", exc_info=True)
        return _error_response(500, 'Harvest failed', e, start_time)

    sync_summary = None
    if table_name:
        scope = (
            request.group_prefix
            or ','.join(request.group_ids or [])
            or f"event:{request.event_id}"
        )
        try:
            store = LinkRowStore(table_name=table_name)
            sync_result = store.sync_rows(
                result.rows,
                scope,
                result.range_start,
                result.range_end
            )
            sync_summary = {
                'rows_added': sync_result.added,
                'rows_updated': sync_result.updated,
                'rows_deleted': sync_result.deleted,
                'errors': sync_result.errors
            }
        except Exception as e:
            logger.error(f"Error during DynamoDB sync operation: {e}", exc_info=True)
            return _error_response(500, 'Failed to store harvested rows', e, start_time)

    duration = time.time() - start_time
    with_attendance = sum(1 for row in result.rows if row.attendance is not None)
    logger.info(
        "Lambda execution completed successfully",
        extra={
            'duration_seconds': round(duration, 2),
            'groups': len(result.groups),
            'events_seen': result.events_seen,
            'rows': len(result.rows)
        }
    )

    body = {
        'message': 'Harvest completed successfully',
        'statistics': {
            'groups_matched': len(result.groups),
            'events_seen': result.events_seen,
            'occurrences': len(result.rows),
            'occurrences_with_attendance': with_attendance,
            'duration_seconds': round(duration, 2)
        },
        'rows': [row.to_dict() for row in result.rows]
    }
    if sync_summary is not None:
        body['sync'] = sync_summary

    return {'statusCode': 200, 'body': json.dumps(body)}
