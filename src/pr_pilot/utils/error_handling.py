"""Error handling helpers for best-effort calls to external collaborators."""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


def log_and_ignore(
    error: Exception,
    message: str,
    *,
    logger_instance: Optional[logging.Logger] = None,
    level: int = logging.WARNING,
) -> None:
    """
    Log an error and ignore it (don't re-raise).

    Use for non-critical errors that should not interrupt the flow,
    e.g. a status comment that could not be posted.
    """
    log = logger_instance or logger
    log.log(level, f"{message}: {error}")
