"""
Span processors: the hand-off point between finished spans and exporters.

``BatchSpanProcessor`` buffers finished spans in a bounded queue and a
background thread exports them in batches, so ending a span never waits
on the network. ``force_flush`` and ``shutdown`` are blocking barriers
that guarantee every span accepted before the call reached the exporter.
"""
from __future__ import annotations

import collections
import logging
import threading
import time
from typing import Optional, Sequence

from .exporter import ExportResult, SpanExporter
from .models import Span

logger = logging.getLogger("spanora.processor")


class SpanProcessor:
    """Interface for span processors."""

    def on_end(self, span: Span) -> None:
        raise NotImplementedError

    def force_flush(self, timeout: Optional[float] = None) -> bool:
        return True

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        return True


class SimpleSpanProcessor(SpanProcessor):
    """Exports every span synchronously as soon as it ends."""

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter
        self._shutdown = False

    def on_end(self, span: Span) -> None:
        if self._shutdown:
            return
        try:
            self.exporter.export([span])
        except Exception:  # noqa: BLE001
            logger.exception("Exporter raised while exporting span %s", span.span_id)

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        if self._shutdown:
            return True
        self._shutdown = True
        try:
            self.exporter.shutdown()
        except Exception:  # noqa: BLE001
            logger.debug("Exporter shutdown failed", exc_info=True)
        return True


class MultiSpanProcessor(SpanProcessor):
    """Fans spans out to several processors."""

    def __init__(self, processors: Sequence[SpanProcessor]):
        self.processors = list(processors)

    def on_end(self, span: Span) -> None:
        for processor in self.processors:
            processor.on_end(span)

    def force_flush(self, timeout: Optional[float] = None) -> bool:
        return all([p.force_flush(timeout) for p in self.processors])

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        return all([p.shutdown(timeout) for p in self.processors])


class BatchSpanProcessor(SpanProcessor):
    """
    Buffers finished spans and exports them from a daemon thread.

    A batch is sent when ``max_batch_size`` spans are waiting or when
    ``schedule_delay`` seconds have passed, whichever comes first.
    When the queue is full new spans are dropped (and counted).
    """

    def __init__(
        self,
        exporter: SpanExporter,
        max_queue_size: int = 2048,
        max_batch_size: int = 512,
        schedule_delay: float = 5.0,
    ):
        if max_queue_size <= 0 or max_batch_size <= 0:
            raise ValueError("max_queue_size and max_batch_size must be positive")
        if max_batch_size > max_queue_size:
            raise ValueError("max_batch_size cannot exceed max_queue_size")
        if schedule_delay <= 0:
            raise ValueError("schedule_delay must be positive")

        self.exporter = exporter
        self.max_queue_size = max_queue_size
        self.max_batch_size = max_batch_size
        self.schedule_delay = schedule_delay

        self._queue: collections.deque[Span] = collections.deque()
        self._condition = threading.Condition()
        self._shutdown = False
        self._flush_requested = False
        self._warned_full = False

        # _accepted counts spans ever queued, _processed counts spans the
        # exporter has finished with (either way); flush waits on the gap.
        self._accepted = 0
        self._processed = 0
        self._exported = 0
        self._dropped = 0

        self._worker = threading.Thread(
            target=self._run, name="spanora-batch-exporter", daemon=True
        )
        self._worker.start()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def queued_spans(self) -> int:
        with self._condition:
            return len(self._queue)

    @property
    def exported_spans(self) -> int:
        with self._condition:
            return self._exported

    @property
    def dropped_spans(self) -> int:
        with self._condition:
            return self._dropped

    # ------------------------------------------------------------------
    # SpanProcessor
    # ------------------------------------------------------------------

    def on_end(self, span: Span) -> None:
        with self._condition:
            if self._shutdown:
                logger.debug("Processor shut down; dropping span %s", span.span_id)
                return
            if len(self._queue) >= self.max_queue_size:
                self._dropped += 1
                if not self._warned_full:
                    self._warned_full = True
                    logger.warning(
                        "Span queue full (%d); dropping spans until the exporter catches up",
                        self.max_queue_size,
                    )
                return
            self._queue.append(span)
            self._accepted += 1
            if len(self._queue) >= self.max_batch_size:
                self._condition.notify_all()

    def force_flush(self, timeout: Optional[float] = 30.0) -> bool:
        """Block until everything queued before this call reached the exporter."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            target = self._accepted
            if self._processed >= target:
                return True
            self._flush_requested = True
            self._condition.notify_all()
            while self._processed < target:
                if not self._worker.is_alive():
                    return False
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    logger.warning("force_flush timed out with %d spans pending", target - self._processed)
                    return False
                self._condition.wait(remaining)
            return True

    def shutdown(self, timeout: Optional[float] = 30.0) -> bool:
        """Stop accepting spans, drain the queue and close the exporter."""
        with self._condition:
            if self._shutdown:
                return True
            self._shutdown = True
            self._condition.notify_all()

        self._worker.join(timeout)
        drained = not self._worker.is_alive()
        if not drained:
            logger.warning("Span exporter thread did not finish within %.1fs", timeout or 0.0)

        try:
            self.exporter.shutdown()
        except Exception:  # noqa: BLE001
            logger.debug("Exporter shutdown failed", exc_info=True)
        return drained

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _next_batch(self) -> Optional[list[Span]]:
        """Wait for a batch to be due; None means shut down with nothing left."""
        with self._condition:
            deadline = time.monotonic() + self.schedule_delay
            while not (
                self._shutdown
                or self._flush_requested
                or len(self._queue) >= self.max_batch_size
            ):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._condition.wait(remaining)

            if not self._queue:
                self._flush_requested = False
                return None if self._shutdown else []

            size = min(len(self._queue), self.max_batch_size)
            batch = [self._queue.popleft() for _ in range(size)]
            if not self._queue:
                self._flush_requested = False
            self._warned_full = False
            return batch

    def _run(self) -> None:
        while True:
            batch = self._next_batch()
            if batch is None:
                return
            if not batch:
                continue
            self._export(batch)

    def _export(self, batch: list[Span]) -> None:
        try:
            result = self.exporter.export(batch)
        except Exception:  # noqa: BLE001
            logger.exception("Exporter raised; dropping %d spans", len(batch))
            result = ExportResult.FAILURE

        with self._condition:
            self._processed += len(batch)
            if result == ExportResult.SUCCESS:
                self._exported += len(batch)
            else:
                self._dropped += len(batch)
            self._condition.notify_all()
