"""Error reporting sink."""

import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class ErrorReporter(ABC):
    """Receives unexpected exceptions from request handlers and workers."""

    @abstractmethod
    def capture(self, exc: BaseException, **context: Any) -> None:
        ...


class LoggingErrorReporter(ErrorReporter):
    """Reports exceptions to the application log, traceback included."""

    def capture(self, exc: BaseException, **context: Any) -> None:
        ctx = " ".join(f"{k}={v}" for k, v in sorted(context.items()))
        logger.error(
            "Unhandled %s: %s %s",
            type(exc).__name__,
            exc,
            ctx,
            exc_info=(type(exc), exc, exc.__traceback__),
        )
