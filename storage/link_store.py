"""DynamoDB store for harvested occurrence rows."""
import logging
import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List

import boto3
from botocore.exceptions import ClientError

from processor.models import LinkRow, SyncResult

logger = logging.getLogger(__name__)


def row_id(scope: str, event_id: str, occur_date: date) -> str:
    """Table key for an occurrence row; each scope keeps its own copy."""
    return f"{scope}#{event_id}#{occur_date.isoformat()}"


class LinkRowStore:
    """Persists LinkRows for one harvest scope (group prefix or group ids)."""

    BATCH_SIZE = 25  # DynamoDB batch operation limit
    TTL_DAYS = 180

    def __init__(self, table_name: str):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the DynamoDB table
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized LinkRowStore for table: {table_name}")

    def get_scope_items(self, scope: str, start: date, end: date) -> Dict[str, dict]:
        """
        Retrieve stored rows of a scope whose occurrence falls in a range.

        Returns:
            Dictionary mapping row_id to the stored item
        """
        items = {}
        try:
            response = self.table.scan()
            found = response.get('Items', [])
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                found.extend(response.get('Items', []))
        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise

        start_text, end_text = start.isoformat(), end.isoformat()
        for item in found:
            if item.get('scope') != scope:
                continue
            if start_text <= item.get('occur_date', '') <= end_text:
                items[item['row_id']] = item

        logger.info(f"Retrieved {len(items)} stored rows for scope '{scope}'")
        return items

    def sync_rows(self, rows: List[LinkRow], scope: str, start: date, end: date) -> SyncResult:
        """
        Replace the stored rows of a scope and date range with a fresh harvest.

        Rows outside the harvested range or belonging to other scopes are
        left untouched.

        Args:
            rows: Harvested rows
            scope: Harvest selector the rows belong to
            start: First day harvested
            end: Last day harvested

        Returns:
            SyncResult with counts of added, updated, deleted rows
        """
        logger.info(f"Starting sync of {len(rows)} rows for scope '{scope}'")
        errors = []

        try:
            existing = self.get_scope_items(scope, start, end)
            now = int(time.time())
            new_items = {
                item['row_id']: item
                for item in (self._row_to_item(row, scope, now) for row in rows)
            }

            to_add = [item for key, item in new_items.items() if key not in existing]
            to_update = [
                item for key, item in new_items.items()
                if key in existing and self._items_differ(item, existing[key])
            ]
            to_delete = [key for key in existing if key not in new_items]

            logger.info(
                f"Sync plan: {len(to_add)} to add, {len(to_update)} to update, "
                f"{len(to_delete)} to delete"
            )

            added_count = 0
            updated_count = 0
            deleted_count = 0

            if to_add or to_update:
                write_count = self.batch_write_items(to_add + to_update)
                added_count = min(write_count, len(to_add))
                updated_count = write_count - added_count

            if to_delete:
                deleted_count = self.batch_delete_items(to_delete)

            logger.info(
                f"Sync complete: {added_count} added, {updated_count} updated, "
                f"{deleted_count} deleted"
            )
            return SyncResult(
                added=added_count,
                updated=updated_count,
                deleted=deleted_count,
                errors=errors
            )

        except ClientError as e:
            error_msg = f"Error during sync operation: {e}"
            logger.error(error_msg)
            errors.append(error_msg)
            return SyncResult(added=0, updated=0, deleted=0, errors=errors)

    def batch_write_items(self, items: List[dict]) -> int:
        """Write items in batches of 25; returns the count written."""
        if not items:
            return 0

        success_count = 0
        for i in range(0, len(items), self.BATCH_SIZE):
            batch = items[i:i + self.BATCH_SIZE]
            try:
                with self.table.batch_writer() as writer:
                    for item in batch:
                        writer.put_item(Item=item)
                        success_count += 1
            except ClientError as e:
                logger.error(f"Error writing batch {i // self.BATCH_SIZE + 1}: {e}")
                continue

        logger.info(f"Successfully wrote {success_count} rows")
        return success_count

    def batch_delete_items(self, row_ids: List[str]) -> int:
        """Delete items in batches of 25; returns the count deleted."""
        if not row_ids:
            return 0

        success_count = 0
        for i in range(0, len(row_ids), self.BATCH_SIZE):
            batch = row_ids[i:i + self.BATCH_SIZE]
            try:
                with self.table.batch_writer() as writer:
                    for key in batch:
                        writer.delete_item(Key={'row_id': key})
                        success_count += 1
            except ClientError as e:
                logger.error(f"Error deleting batch {i // self.BATCH_SIZE + 1}: {e}")
                continue

        logger.info(f"Successfully deleted {success_count} rows")
        return success_count

    def _row_to_item(self, row: LinkRow, scope: str, now: int) -> dict:
        """Convert a LinkRow into a DynamoDB item."""
        item = {
            'row_id': row_id(scope, row.event_id, row.occur_date),
            'event_id': row.event_id,
            'title': row.title,
            'occur_date': row.occur_date.isoformat(),
            'link': row.link,
            'scope': scope,
            'last_updated': now,
            'ttl': self._calculate_ttl(row.occur_date)
        }
        if row.attendance is not None:
            item['attendance'] = row.attendance.to_dict()
        return item

    def _calculate_ttl(self, occur_date: date) -> int:
        expires = datetime.combine(occur_date, datetime.min.time()) + timedelta(days=self.TTL_DAYS)
        return int(expires.timestamp())

    def _items_differ(self, new_item: dict, stored: dict) -> bool:
        """Compare all fields except the last_updated timestamp."""
        fields = ('title', 'occur_date', 'link', 'ttl', 'attendance')
        return any(
            _plain(new_item.get(name)) != _plain(stored.get(name))
            for name in fields
        )


def _plain(value):
    """Convert boto3 Decimals back to ints for comparison."""
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else value
    return value
