"""Concurrent page walker for CCB list services.

CCB list services have no continuation cursor, only page number and page
size. Workers claim page numbers from a shared counter and stop when a page
comes back short, so a worker already in flight when the last page is seen
may fetch one exhausted page. That over-fetch is accepted; downstream
deduplication absorbs any repeated records.
"""
import itertools
import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional, Sequence, Union

from harvester.errors import HarvestError, PaginationError
from harvester.transport import CCBTransport, as_list, get_path

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 200

ExtractPath = Union[str, Sequence[str]]


def extract_records(tree: Dict[str, Any], extract_path: ExtractPath) -> list:
    """
    Pull the record list out of a parsed page.

    Args:
        tree: Parsed response tree
        extract_path: Dotted path, or ordered alternatives tried in turn
            (for services that wrap records in singular or plural elements)

    Returns:
        Records found at the first alternative that yields any
    """
    paths = [extract_path] if isinstance(extract_path, str) else list(extract_path)
    for path in paths:
        records = [r for r in as_list(get_path(tree, path)) if isinstance(r, dict)]
        if records:
            return records
    return []


def paginate(
    transport: CCBTransport,
    service: str,
    fixed_params: Optional[Dict[str, Any]],
    extract_path: ExtractPath,
    page_size: int,
    concurrency: int,
    max_pages: int = DEFAULT_MAX_PAGES
) -> List[dict]:
    """
    Drive a list service to completion with a fixed pool of page workers.

    Args:
        transport: Authenticated transport
        service: CCB service name
        fixed_params: Parameters sent with every page
        extract_path: Where the records live in each parsed page
        page_size: Records requested per page (per_page)
        concurrency: Number of concurrent page workers
        max_pages: Hard ceiling on page numbers

    Returns:
        Raw record nodes from every page, in arrival order

    Raises:
        PaginationError: If any page request fails; no partial list is returned
    """
    page_counter = itertools.count(1)
    stop = threading.Event()
    records: List[dict] = []

    def worker() -> int:
        pages_fetched = 0
        while not stop.is_set():
            page = next(page_counter)
            if page > max_pages:
                logger.warning(f"{service}: reached page ceiling of {max_pages}")
                stop.set()
                break

            params = dict(fixed_params or {})
            params.update({'page': page, 'per_page': page_size})
            tree = transport.request(service, params)
            page_records = extract_records(tree, extract_path)
            records.extend(page_records)
            pages_fetched += 1

            logger.debug(f"{service}: page {page} returned {len(page_records)} records")
            if len(page_records) < page_size:
                stop.set()
        return pages_fetched

    logger.info(
        f"Paginating {service} (per_page={page_size}, workers={concurrency})"
    )
    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=f"page-{service}") as executor:
        futures = [executor.submit(worker) for _ in range(concurrency)]
        done, _ = wait(futures, return_when=FIRST_EXCEPTION)

        for future in done:
            error = future.exception()
            if error is not None:
                stop.set()
                logger.error(f"Aborting {service} harvest: {error}")
                if isinstance(error, HarvestError):
                    raise PaginationError(service, error) from error
                raise error

        pages = sum(future.result() for future in futures)

    logger.info(f"Harvested {len(records)} records from {service} in {pages} pages")
    return records
