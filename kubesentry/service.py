"""Continuous scanning: watch the cluster and feed resource events to handlers."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any

from .handlers import EventHandler
from .matching import TargetLoader
from .watches import POLL_INTERVAL, WatchEvent, new_watch_pool

log = logging.getLogger(__name__)


class ContinuousScanningService:
    """Watches the resources a target loader names and dispatches their events."""

    def __init__(
        self,
        client: Any,
        target_loader: TargetLoader,
        *handlers: EventHandler,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self._client = client
        self._loader = target_loader
        self._handlers: list[EventHandler] = list(handlers)
        self._events: "queue.Queue[WatchEvent]" = queue.Queue()
        self._stop = threading.Event()
        self._poll_interval = poll_interval
        self._worker: threading.Thread | None = None

    def launch(self) -> None:
        """Start the watches and the dispatcher; blocks until every watch is ready."""
        if self._worker is not None:
            raise RuntimeError("service already launched")
        gvrs = self._loader.load_gvrs()
        log.info("fetched gvrs: %s", [str(gvr) for gvr in gvrs])
        pool = new_watch_pool(self._client, gvrs)
        pool.run(self._events, self._stop)
        log.info("ran watch pool")
        self._worker = threading.Thread(target=self._work, name="continuous-scanning", daemon=True)
        self._worker.start()

    def _work(self) -> None:
        while True:
            try:
                event = self._events.get(timeout=self._poll_interval)
            except queue.Empty:
                if self._stop.is_set():
                    return
                continue
            log.debug("got an event to process: %s", event)
            for handler in list(self._handlers):
                try:
                    handler.handle(event)
                except Exception as exc:  # one failing handler must not stop the others
                    log.error("failed to handle event %s: %s", event, exc)

    def add_event_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def stop(self) -> None:
        """Stop the watches and wait for the dispatcher to finish."""
        self._stop.set()
        if self._worker is not None:
            self._worker.join()