# scan_session.py
"""
Two-phase receipt scan.

Phase 1 (merchant + total) runs in the caller and either succeeds or aborts
the scan with nothing committed. Phase 2 (items + breakdown) runs on a
worker thread; its result is only committed if no newer scan or reset has
happened in the meantime, so a late answer never clobbers fresh state.
"""
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

import structlog

from ai_parser import ExtractionError, Phase1Result, scan_failed_message
from models import ParsedReceipt
from reconcile import merge_phases

log = structlog.get_logger()

IDLE = "idle"
ITEMS_LOADING = "items_loading"
READY = "ready"
ITEMS_ERROR = "items_error"


class ScanSession:
    def __init__(self,
                 uploader: Callable[[bytes], str],
                 phase1: Callable[[str], Phase1Result],
                 phase2: Callable[[str, int], ParsedReceipt],
                 executor: Optional[ThreadPoolExecutor] = None,
                 on_update: Optional[Callable[["ScanSession"], None]] = None):
        self._uploader = uploader
        self._phase1 = phase1
        self._phase2 = phase2
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="phase2")
        self._on_update = on_update
        self._lock = threading.Lock()
        self._generation = 0
        self._future: Optional[Future] = None

        self.status = IDLE
        self.merchant: Optional[str] = None
        self.total_cents: Optional[int] = None
        self.details: Optional[ParsedReceipt] = None
        self.error: Optional[str] = None

    @property
    def phase2_future(self) -> Optional[Future]:
        return self._future

    def start(self, image_bytes: bytes) -> Phase1Result:
        """
        Cancel any in-flight scan, run phase 1 and kick off phase 2.
        Raises ExtractionError if the upload or phase 1 fails.
        """
        generation = self.cancel()

        file_uri = self._uploader(image_bytes)
        headline = self._phase1(file_uri)
        log.info("phase1_done", merchant=headline.merchant, total_cents=headline.total_cents)

        with self._lock:
            if generation != self._generation:
                # reset while phase 1 was running
                return headline
            self.merchant = headline.merchant
            self.total_cents = headline.total_cents
            self.details = None
            self.error = None
            self.status = ITEMS_LOADING
            known_total = max(0, headline.total_cents or 0)
            future = self._executor.submit(self._phase2, file_uri, known_total)
            self._future = future
        # outside the lock: an already-finished future runs the callback inline
        future.add_done_callback(lambda f: self._finish(generation, f))
        return headline

    def _finish(self, generation: int, future: Future) -> None:
        if future.cancelled():
            return
        err = future.exception()
        with self._lock:
            if generation != self._generation:
                log.info("phase2_stale_result_dropped", generation=generation)
                return
            if err is None:
                self.details = future.result()
                self.status = READY
                log.info("phase2_done", items=len(self.details.items))
            else:
                if not isinstance(err, ExtractionError):
                    log.error("phase2_crashed", error=repr(err))
                else:
                    log.warning("phase2_failed", error=str(err))
                self.error = scan_failed_message(err)
                self.status = ITEMS_ERROR
        if self._on_update is not None:
            self._on_update(self)

    def cancel(self) -> int:
        """Invalidate any running phase 2; returns the new generation."""
        with self._lock:
            self._generation += 1
            if self._future is not None:
                self._future.cancel()
                self._future = None
            if self.status == ITEMS_LOADING:
                self.status = IDLE
            return self._generation

    def reset(self) -> None:
        self.cancel()
        with self._lock:
            self.status = IDLE
            self.merchant = None
            self.total_cents = None
            self.details = None
            self.error = None

    def snapshot(self) -> ParsedReceipt:
        with self._lock:
            return merge_phases(self.merchant, self.total_cents, self.details)

    def shutdown(self) -> None:
        self.cancel()
        self._executor.shutdown(wait=False)
