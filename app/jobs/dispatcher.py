"""Job dispatcher interface."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from app.jobs.models import WorkItem

# Called with (item, last_error) once a work item has used up its retries.
FailureHook = Callable[[WorkItem, BaseException], Awaitable[None]]


class JobDispatcher(ABC):
    """Abstract interface for job dispatching (in-process or durable broker)."""

    @abstractmethod
    async def submit(self, item: WorkItem) -> None:
        """Enqueue a work item. Raises TransientInfraError if it cannot be queued."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start worker loop)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
