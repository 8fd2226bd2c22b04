"""Retry logic with exponential backoff"""

import time
from typing import Callable, Any, Tuple, Type
from gastos_analytics.utils.logging import get_logger
from gastos_analytics.utils.errors import AnalyticsPipelineError

logger = get_logger(__name__)


def retry_with_exponential_backoff(
    func: Callable,
    max_retries: int = 5,
    base_delay: float = 30,
    max_delay: float = 480,
    *args,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    **kwargs
) -> Any:
    """
    Retry function with exponential backoff

    Args:
        func: Function to retry
        max_retries: Maximum retry attempts
        base_delay: Base delay in seconds (30s)
        max_delay: Max delay cap (480s = 8 min)
        retry_on: Exception types worth retrying; others propagate at once
        *args, **kwargs: Arguments to pass to func

    Returns:
        Function result

    Raises:
        AnalyticsPipelineError: If all retries exhausted
    """
    for attempt in range(max_retries):
        try:
            return func(*args, **kwargs)

        except retry_on as e:
            if attempt == max_retries - 1:
                logger.error(f"All {max_retries} retry attempts exhausted", function=getattr(func, "__name__", str(func)))
                raise AnalyticsPipelineError(f"Failed after {max_retries} attempts: {e}") from e

            delay = min(base_delay * (2 ** attempt), max_delay)
            logger.warning(f"Attempt {attempt + 1} failed, retrying in {delay}s: {e}")
            time.sleep(delay)
