"""Integration tests for Lambda handler."""
import json
import os
from datetime import date, timedelta
from unittest.mock import Mock, patch

import pytest

from harvester.errors import PaginationError, UpstreamHTTPError
from lambda_function import build_request, lambda_handler, setup_logging
from processor.models import AttendanceSummary, Group, HarvestResult, LinkRow, SyncResult


@pytest.fixture
def mock_env():
    """Set up environment variables for testing."""
    env_vars = {
        'CCB_BASE_URL': 'https://testchurch.ccbchurch.com',
        'CCB_API_USERNAME': 'api_user',
        'CCB_API_PASSWORD': 'secret',
        'LOG_LEVEL': 'INFO',
        'DAYS_BACK': '14'
    }
    with patch.dict(os.environ, env_vars, clear=True):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.memory_limit_in_mb = 512
    context.invoked_function_arn = 'arn:aws:lambda:us-east-1:123456789012:function:test-function'
    context.aws_request_id = 'test-request-id'
    return context


@pytest.fixture
def sample_result():
    """Create a sample harvest result."""
    rows = [
        LinkRow(
            event_id='1001',
            title='Circle meeting',
            occur_date=date(2025, 8, 4),
            link='https://testchurch.ccbchurch.com/event_detail.php?event_id=1001&occur=20250804',
            attendance=AttendanceSummary(event_id='1001', occurrence=date(2025, 8, 4), head_count=11)
        ),
        LinkRow(
            event_id='1004',
            title='Tuesday circle',
            occur_date=date(2025, 8, 5),
            link='https://testchurch.ccbchurch.com/event_detail.php?event_id=1004&occur=20250805'
        )
    ]
    return HarvestResult(
        groups=[Group('170', 'LVT | S1 | Smith'), Group('171', 'LVT | S1 | Jones')],
        events_seen=12,
        rows=rows,
        range_start=date(2025, 8, 1),
        range_end=date(2025, 8, 31)
    )


@pytest.fixture
def august_event():
    return {
        'group_prefix': 'LVT | S1 |',
        'start_date': '2025-08-01',
        'end_date': '2025-08-31',
        'include_attendance': True
    }


class TestLambdaHandler:
    """Test cases for Lambda handler."""

    @patch('lambda_function.LinkRowStore')
    @patch('lambda_function.CCBHarvester')
    def test_successful_harvest(
        self,
        mock_harvester_class,
        mock_store_class,
        mock_env,
        mock_context,
        august_event,
        sample_result
    ):
        """Test successful end-to-end harvest without persistence."""
        mock_harvester = Mock()
        mock_harvester.harvest.return_value = sample_result
        mock_harvester_class.return_value = mock_harvester

        response = lambda_handler(august_event, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['message'] == 'Harvest completed successfully'
        assert body['statistics']['groups_matched'] == 2
        assert body['statistics']['events_seen'] == 12
        assert body['statistics']['occurrences'] == 2
        assert body['statistics']['occurrences_with_attendance'] == 1
        assert 'duration_seconds' in body['statistics']
        assert body['rows'][0]['occur_date'] == '2025-08-04'
        assert body['rows'][0]['attendance']['head_count'] == 11
        assert 'attendance' not in body['rows'][1]
        assert 'sync' not in body

        request = mock_harvester.harvest.call_args.args[0]
        assert request.group_prefix == 'LVT | S1 |'
        assert request.include_attendance is True
        assert request.include_attendees is False
        mock_store_class.assert_not_called()

    @patch('lambda_function.LinkRowStore')
    @patch('lambda_function.CCBHarvester')
    def test_rows_synced_when_table_configured(
        self,
        mock_harvester_class,
        mock_store_class,
        mock_env,
        mock_context,
        august_event,
        sample_result
    ):
        """Test rows are written to DynamoDB when TABLE_NAME is set."""
        mock_harvester_class.return_value.harvest.return_value = sample_result
        mock_store = Mock()
        mock_store.sync_rows.return_value = SyncResult(added=1, updated=1, deleted=2, errors=[])
        mock_store_class.return_value = mock_store

        with patch.dict(os.environ, {'TABLE_NAME': 'test-ccb-links'}):
            response = lambda_handler(august_event, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['sync'] == {
            'rows_added': 1,
            'rows_updated': 1,
            'rows_deleted': 2,
            'errors': []
        }
        mock_store_class.assert_called_once_with(table_name='test-ccb-links')
        mock_store.sync_rows.assert_called_once_with(
            sample_result.rows,
            'LVT | S1 |',
            date(2025, 8, 1),
            date(2025, 8, 31)
        )

    @patch('lambda_function.LinkRowStore')
    @patch('lambda_function.CCBHarvester')
    def test_sync_uses_range_parsed_by_harvest(
        self,
        mock_harvester_class,
        mock_store_class,
        mock_env,
        mock_context,
        sample_result
    ):
        """Loosely formatted dates accepted by the harvest are not parsed again for the sync."""
        mock_harvester_class.return_value.harvest.return_value = sample_result
        mock_store_class.return_value.sync_rows.return_value = SyncResult(added=2, updated=0, deleted=0, errors=[])

        with patch.dict(os.environ, {'TABLE_NAME': 'test-ccb-links'}):
            response = lambda_handler(
                {'group_ids': [170, 171], 'start_date': ' 2025-8-1', 'end_date': '2025-08-31 '},
                mock_context
            )

        assert response['statusCode'] == 200
        args = mock_store_class.return_value.sync_rows.call_args.args
        assert args[1:] == ('170,171', date(2025, 8, 1), date(2025, 8, 31))

    @patch('lambda_function.CCBHarvester')
    def test_pagination_failure(self, mock_harvester_class, mock_env, mock_context, august_event):
        """Test error handling when a page of group_profiles fails."""
        mock_harvester_class.return_value.harvest.side_effect = PaginationError(
            'group_profiles', UpstreamHTTPError(503, 'Service Unavailable')
        )

        response = lambda_handler(august_event, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Failed to harvest CCB group_profiles'
        assert body['error_type'] == 'PaginationError'
        assert '503' in body['error']
        assert 'duration_seconds' in body

    @patch('lambda_function.CCBHarvester')
    def test_invalid_parameters(self, mock_harvester_class, mock_env, mock_context):
        """Test invalid dates are reported as a client error."""
        mock_harvester_class.return_value.harvest.side_effect = ValueError('Invalid start date')

        response = lambda_handler({'group_ids': '170', 'start_date': 'soon'}, mock_context)

        assert response['statusCode'] == 400
        body = json.loads(response['body'])
        assert body['message'] == 'Invalid harvest parameters'
        assert body['error_type'] == 'ValueError'

    @patch('lambda_function.CCBHarvester')
    def test_invalid_override(self, mock_harvester_class, mock_env, mock_context, august_event):
        august_event['page_size'] = 'lots'

        response = lambda_handler(august_event, mock_context)

        assert response['statusCode'] == 400
        mock_harvester_class.assert_not_called()

    @patch('lambda_function.CCBHarvester')
    def test_missing_credentials(self, mock_harvester_class, mock_context, august_event):
        """Test configuration errors return 500 before any harvest."""
        with patch.dict(os.environ, {'LOG_LEVEL': 'INFO'}, clear=True):
            response = lambda_handler(august_event, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'CCB client configuration failed'
        assert body['error_type'] == 'ConfigurationError'
        mock_harvester_class.assert_not_called()

    @patch('lambda_function.LinkRowStore')
    @patch('lambda_function.CCBHarvester')
    def test_dynamodb_sync_failure(
        self,
        mock_harvester_class,
        mock_store_class,
        mock_env,
        mock_context,
        august_event,
        sample_result
    ):
        """Test error handling for DynamoDB sync failures."""
        mock_harvester_class.return_value.harvest.return_value = sample_result
        mock_store_class.return_value.sync_rows.side_effect = Exception('DynamoDB error')

        with patch.dict(os.environ, {'TABLE_NAME': 'test-ccb-links'}):
            response = lambda_handler(august_event, mock_context)

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['message'] == 'Failed to store harvested rows'
        assert 'DynamoDB error' in body['error']

    @patch('lambda_function.setup_logging')
    @patch('lambda_function.CCBHarvester')
    def test_logging_output(
        self,
        mock_harvester_class,
        mock_setup_logging,
        mock_env,
        mock_context,
        august_event,
        sample_result,
        caplog
    ):
        """Test that logging output is generated correctly."""
        import logging
        mock_harvester_class.return_value.harvest.return_value = sample_result

        with caplog.at_level(logging.INFO, logger='lambda_function'):
            response = lambda_handler(august_event, mock_context)

        assert response['statusCode'] == 200
        log_messages = [record.message for record in caplog.records]
        assert any('Lambda execution started' in msg for msg in log_messages)
        assert any('Lambda execution completed successfully' in msg for msg in log_messages)


class TestBuildRequest:
    """Test cases for payload parsing."""

    def test_comma_separated_group_ids(self):
        request = build_request({'group_ids': '170, 171,', 'start_date': '2025-08-01', 'end_date': '2025-08-31'}, 14)

        assert request.group_ids == ['170', '171']
        assert request.group_prefix is None

    def test_default_dates(self):
        request = build_request({'group_prefix': 'LVT'}, 14)

        assert request.end_date == date.today().isoformat()
        assert request.start_date == (date.today() - timedelta(days=14)).isoformat()

    def test_numeric_group_ids_become_strings(self):
        request = build_request({'group_ids': [170, 285], 'event_id': 1005}, 14)

        assert request.group_ids == ['170', '285']
        assert request.event_id == '1005'

    def test_single_numeric_group_id(self):
        assert build_request({'group_id': 170}, 14).group_ids == ['170']

    def test_string_flags(self):
        request = build_request(
            {'group_prefix': 'LVT', 'include_attendance': 'true', 'include_attendees': 'no'}, 14
        )

        assert request.include_attendance is True
        assert request.include_attendees is False


class TestSetupLogging:
    """Test cases for logging setup."""

    def test_setup_logging_default_level(self):
        """Test logging setup with default INFO level."""
        setup_logging()
        logger = __import__('logging').getLogger()
        assert logger.level == __import__('logging').INFO

    def test_setup_logging_debug_level(self):
        """Test logging setup with DEBUG level."""
        setup_logging('DEBUG')
        logger = __import__('logging').getLogger()
        assert logger.level == __import__('logging').DEBUG

    def test_setup_logging_error_level(self):
        """Test logging setup with ERROR level."""
        setup_logging('ERROR')
        logger = __import__('logging').getLogger()
        assert logger.level == __import__('logging').ERROR
