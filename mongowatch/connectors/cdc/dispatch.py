"""
Dispatch pipeline: ordered stages run for every change event.

Each stage receives the error left by the stage before it, so a final stage
can clean up after an earlier failure. A stage signals failure by raising;
returning normally clears the error for the next stage.
"""

import logging
from typing import Callable, Iterable, List, Optional

from .cancel import CancelScope
from .errors import DispatchError
from .events import ChangeEvent

logger = logging.getLogger(__name__)

DispatchStage = Callable[[CancelScope, ChangeEvent, Optional[Exception]], None]


class DispatchPipeline:
    """Ordered list of dispatch stages."""

    def __init__(self, stages: Iterable[DispatchStage] = ()):
        self.stages: List[DispatchStage] = list(stages)

    def __len__(self) -> int:
        return len(self.stages)

    def run(self, ctx: CancelScope, event: ChangeEvent) -> None:
        """
        Run every stage for the event.

        Raises:
            DispatchError: If an error is left after the last stage
        """
        error: Optional[Exception] = None
        for stage in self.stages:
            try:
                stage(ctx, event, error)
                error = None
            except Exception as e:
                logger.debug(
                    f"Dispatch stage {getattr(stage, '__name__', stage)!r} failed: {e}",
                    extra={"token": event.id, "operation": event.operation_type.value}
                )
                error = e

        if error is not None:
            raise DispatchError(
                f"Failed to process {event.operation_type.value} event {event.id}: {error}",
                event=event,
            ) from error
