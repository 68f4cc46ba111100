"""Stage timing for the executor pipeline."""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class StageTiming:
    operation: str
    elapsed_ms: float = 0.0


@contextmanager
def timer(
    operation_name: str,
    tenant_id: Optional[str] = None,
    log_level: str = "debug",
    slow_ms: Optional[float] = None,
) -> Iterator[StageTiming]:
    """
    Time a pipeline stage and log its duration.

    Usage:
        with timer("Executor - retrieval", tenant_id) as timing:
            packed = await retrieve_hybrid(...)
        timing.elapsed_ms  # 245.3

    Stages slower than ``slow_ms`` are logged at WARNING regardless of
    ``log_level``. The duration is logged even when the stage raises.
    """
    timing = StageTiming(operation=operation_name)
    start = time.perf_counter()
    try:
        yield timing
    finally:
        timing.elapsed_ms = round((time.perf_counter() - start) * 1000, 1)

        extra = {"operation": operation_name, "duration_ms": timing.elapsed_ms}
        if tenant_id:
            extra["tenant_id"] = tenant_id

        level = getattr(logging, log_level.upper(), logging.DEBUG)
        if slow_ms is not None and timing.elapsed_ms > slow_ms:
            level = logging.WARNING

        logger.log(level, f"{operation_name} took {timing.elapsed_ms:.1f}ms", extra=extra)
