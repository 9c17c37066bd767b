"""Indexing state and the progress snapshot shown to users."""

from __future__ import annotations

import logging
from typing import Any, Callable

from codeindex.events import EventBus
from codeindex.models import IndexingState

logger = logging.getLogger(__name__)

PROGRESS_UPDATE = "progress-update"

_DEFAULT_MESSAGES = {
    IndexingState.STANDBY: "Ready.",
    IndexingState.INDEXED: "Index up-to-date.",
    IndexingState.ERROR: "An error occurred.",
}


class StateManager:
    """Holds the current :class:`IndexingState` and progress counters.

    Every change is published as a ``progress-update`` event carrying the
    dict returned by :meth:`get_current_status`.
    """

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self.events = event_bus or EventBus()
        self._state = IndexingState.STANDBY
        self._message = ""
        self._processed_items = 0
        self._total_items = 0
        self._current_item_unit = "blocks"

    @property
    def state(self) -> IndexingState:
        return self._state

    def on_progress_update(self, handler: Callable[[dict[str, Any]], None]) -> Callable[[], None]:
        return self.events.on(PROGRESS_UPDATE, handler)

    def get_current_status(self) -> dict[str, Any]:
        return {
            "systemStatus": self._state.value,
            "message": self._message,
            "processedItems": self._processed_items,
            "totalItems": self._total_items,
            "currentItemUnit": self._current_item_unit,
        }

    def _fire(self) -> None:
        self.events.emit(PROGRESS_UPDATE, self.get_current_status())

    def set_system_state(self, state: IndexingState, message: str | None = None) -> None:
        if state == self._state and (message is None or message == self._message):
            return

        if state != self._state:
            logger.info("Indexing state: %s -> %s", self._state.value, state.value)
        self._state = state
        if message is not None:
            self._message = message
        elif state in _DEFAULT_MESSAGES:
            self._message = _DEFAULT_MESSAGES[state]

        if state != IndexingState.INDEXING:
            self._processed_items = 0
            self._total_items = 0
            self._current_item_unit = "blocks"
        self._fire()

    def report_block_indexing_progress(self, processed: int, total: int) -> None:
        message = f"Indexed {processed} / {total} blocks found"
        if (
            self._state == IndexingState.INDEXING
            and self._processed_items == processed
            and self._total_items == total
            and self._message == message
        ):
            return
        self._state = IndexingState.INDEXING
        self._processed_items = processed
        self._total_items = total
        self._current_item_unit = "blocks"
        self._message = message
        self._fire()

    def report_file_queue_progress(
        self, processed: int, total: int, current_file: str | None = None
    ) -> None:
        if total > 0 and processed < total:
            message = f"Processing {processed} / {total} files. Current: {current_file or 'N/A'}"
        elif total > 0:
            message = f"Finished processing {total} files from queue."
        else:
            message = "File queue processed."

        if (
            self._state == IndexingState.INDEXING
            and self._processed_items == processed
            and self._total_items == total
            and self._message == message
        ):
            return
        self._state = IndexingState.INDEXING
        self._processed_items = processed
        self._total_items = total
        self._current_item_unit = "files"
        self._message = message
        self._fire()

    def dispose(self) -> None:
        self.events.clear()
