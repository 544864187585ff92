"""Command line entry point: print CCB event links for a group and date range.

Examples:
    ccb-links --prefix "LVT | S1 |" --start 2025-08-01 --end 2025-08-31
    ccb-links --event 14002 --start 2025-08-01 --end 2025-08-31
    ccb-links --group 170 --start 2025-08-01 --end 2025-08-31 --with-notes --include-attendees

Credentials come from CCB_BASE_URL (or CCB_SUBDOMAIN), CCB_API_USERNAME and
CCB_API_PASSWORD.
"""
import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from harvester.ccb_harvester import CCBHarvester
from harvester.config import HarvestConfig
from harvester.errors import HarvestError
from lambda_function import setup_logging
from processor.models import HarvestRequest

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ccb-links',
        description='List CCB event occurrence links for groups in a date range.'
    )
    selector = parser.add_mutually_exclusive_group()
    selector.add_argument('--prefix', help='Group name prefix, e.g. "LVT | S1 |"')
    selector.add_argument('--group', action='append', help='CCB group id (repeatable)')
    parser.add_argument('--start', required=True, help='Start date (YYYY-MM-DD)')
    parser.add_argument('--end', required=True, help='End date (YYYY-MM-DD)')
    parser.add_argument('--event', help='Only occurrences of this event id')
    parser.add_argument('--with-notes', action='store_true',
                        help='Attach attendance notes for each occurrence')
    parser.add_argument('--include-attendees', action='store_true',
                        help='Include attendee roster when using --with-notes')
    parser.add_argument('--page-size', type=int, help='Records per page')
    parser.add_argument('--concurrency', type=int, help='Concurrent page workers')
    parser.add_argument('--timeout', type=float, help='Per-request timeout in seconds')
    parser.add_argument('--log-level', default=os.environ.get('LOG_LEVEL', 'WARNING'))
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = HarvestConfig.from_env().with_overrides(
            page_size=args.page_size,
            concurrency=args.concurrency,
            timeout=args.timeout
        )
        harvester = CCBHarvester(config)
        result = harvester.harvest(HarvestRequest(
            start_date=args.start,
            end_date=args.end,
            group_prefix=args.prefix,
            group_ids=args.group,
            event_id=args.event,
            include_attendance=args.with_notes,
            include_attendees=args.include_attendees
        ))
    except (HarvestError, ValueError) as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1

    print(json.dumps([row.to_dict() for row in result.rows], indent=2))

    if result.rows:
        print('')
        for row in result.rows:
            print(row.link)
    else:
        selector = args.prefix or ', '.join(args.group or []) or f"event {args.event}"
        print(f"No events found for {selector} in range {args.start} to {args.end}.", file=sys.stderr)
    return 0


if __name__ == '__main__':
    sys.exit(main())
