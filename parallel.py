"""
parallel.py
Region-level task map. Regions are independent units of work; results are
collected into a dict in input order. Worker exceptions propagate.
"""
import logging
from concurrent.futures import ProcessPoolExecutor
from typing import Any, Callable, Dict, Mapping

logger = logging.getLogger(__name__)


def map_regions(func: Callable[..., Any], items: Mapping[str, Any],
                max_workers: int = 1) -> Dict[str, Any]:
    """Apply func(region, item) to every region.

    func must be a picklable top-level callable when max_workers > 1.
    """
    regions = list(items)
    if max_workers is None or max_workers <= 1 or len(regions) <= 1:
        return {r: func(r, items[r]) for r in regions}

    logger.info(f"Processing {len(regions)} regions with {max_workers} workers")
    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        futures = {r: executor.submit(func, r, items[r]) for r in regions}
        return {r: futures[r].result() for r in regions}
