"""
Periodic scheduler - 定时任务

Two independent loops (subscription refresh, verification), each in its own
thread, sharing one stop event. ``stop()`` returns only after both loops have
finished their current iteration.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from enum import Enum
from typing import Any, Callable, List, Optional

from ..core.events import EventBus
from ..db import SQLiteStore

logger = logging.getLogger(__name__)

_WAKE = object()


class StartStatus(Enum):
    OK = "ok"
    ALREADY_RUNNING = "already running"
    ALL_DISABLED = "all disabled"


def describe_start(sub_enabled: bool, verify_enabled: bool) -> str:
    return "subscription {}, verification {}".format(
        "enabled" if sub_enabled else "disabled",
        "enabled" if verify_enabled else "disabled",
    )


class Scheduler:
    def __init__(
        self,
        store: SQLiteStore,
        refresh: Optional[Callable[[], Any]] = None,
        on_update: Optional[Callable[[], Any]] = None,
        on_verify: Optional[Callable[[], Any]] = None,
        on_pipeline: Optional[Callable[[], Any]] = None,
        bus: Optional[EventBus] = None,
        minute: float = 60.0,
    ):
        self.store = store
        self.refresh = refresh
        self.on_update = on_update
        self.on_verify = on_verify
        self.on_pipeline = on_pipeline
        self.bus = bus
        # seconds per configured interval unit
        self.minute = minute

        self._lock = threading.Lock()
        self._running = False
        self._stop = threading.Event()
        self._verify_reset: "queue.Queue[object]" = queue.Queue(maxsize=1)
        self._workers: List[threading.Thread] = []
        self._interval = 0.0
        self._verify_interval = 0.0
        self._next_update: Optional[float] = None
        self._next_verify: Optional[float] = None
        self._last_verify: Optional[float] = None
        self._message = "stopped"

    # ---------- lifecycle ----------

    def start(self) -> StartStatus:
        with self._lock:
            if self._running:
                self._message = StartStatus.ALREADY_RUNNING.value
                return StartStatus.ALREADY_RUNNING

            settings = self.store.get_settings()
            sub_enabled = settings.subscription_interval > 0
            verify_enabled = settings.verification_interval > 0 and self.on_verify is not None
            if not sub_enabled and not verify_enabled:
                logger.info("all scheduled tasks disabled")
                self._message = StartStatus.ALL_DISABLED.value
                return StartStatus.ALL_DISABLED

            self._running = True
            self._stop = threading.Event()
            self._verify_reset = queue.Queue(maxsize=1)
            self._interval = settings.subscription_interval * self.minute if sub_enabled else 0.0
            self._verify_interval = settings.verification_interval * self.minute if verify_enabled else 0.0
            self._message = describe_start(sub_enabled, verify_enabled)

            workers: List[threading.Thread] = []
            if sub_enabled:
                workers.append(self._spawn(self._subscription_loop, "scheduler-subscription"))
                logger.info("subscription updates started, interval: %ss", self._interval)
            if verify_enabled:
                workers.append(self._spawn(self._verification_loop, "scheduler-verification"))
                logger.info("verification started, interval: %ss", self._verify_interval)
            self._workers = workers

        if self.bus is not None:
            self.bus.publish_timestamped("pipeline:start", {})
        return StartStatus.OK

    def _spawn(self, fn: Callable[[threading.Event, "queue.Queue[object]"], None], name: str) -> threading.Thread:
        th = threading.Thread(
            target=fn, args=(self._stop, self._verify_reset), name=f"nodeguard-{name}", daemon=True
        )
        th.start()
        return th

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop.set()
            try:
                self._verify_reset.put_nowait(_WAKE)
            except queue.Full:
                # a pending reset wakes the loop just as well
                pass
            self._next_update = None
            self._next_verify = None
            workers, self._workers = self._workers, []
            self._message = "stopped"

        current = threading.current_thread()
        for th in workers:
            if th is not current:
                th.join()

        if self.bus is not None:
            self.bus.publish_timestamped("pipeline:stop", {})
        logger.info("scheduler stopped")

    def restart(self) -> StartStatus:
        self.stop()
        return self.start()

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def describe(self) -> str:
        with self._lock:
            return self._message

    def mark_manual_verification_run(self) -> None:
        """Record a manual run and restart the verification period from now."""
        with self._lock:
            self._last_verify = time.time()
            should_reset = self._running and self._verify_interval > 0
            reset_q = self._verify_reset
        if should_reset:
            try:
                reset_q.put_nowait(_WAKE)
            except queue.Full:
                pass

    # ---------- accessors ----------

    def next_update_time(self) -> Optional[float]:
        with self._lock:
            return self._next_update

    def next_verify_time(self) -> Optional[float]:
        with self._lock:
            return self._next_verify

    def last_verify_time(self) -> Optional[float]:
        with self._lock:
            return self._last_verify

    def interval(self) -> float:
        with self._lock:
            return self._interval

    def verify_interval(self) -> float:
        with self._lock:
            return self._verify_interval

    # ---------- loops ----------

    def _subscription_loop(self, stop: threading.Event, _reset: "queue.Queue[object]") -> None:
        interval = self._interval
        with self._lock:
            self._next_update = time.time() + interval
        while not stop.wait(interval):
            self._update_subscriptions()
            with self._lock:
                if not stop.is_set():
                    self._next_update = time.time() + interval

    def _verification_loop(self, stop: threading.Event, reset: "queue.Queue[object]") -> None:
        interval = self._verify_interval
        next_at = time.time() + interval
        with self._lock:
            self._next_verify = next_at
        while not stop.is_set():
            try:
                reset.get(timeout=max(0.0, next_at - time.time()))
            except queue.Empty:
                if stop.is_set():
                    break
                self._run_verification()
            else:
                if stop.is_set():
                    break
            # either a tick or a manual reset: the next fire is one interval from now
            next_at = time.time() + interval
            with self._lock:
                if not stop.is_set():
                    self._next_verify = next_at

    def _run_verification(self) -> None:
        logger.info("starting automatic verification")
        if self.on_verify is not None:
            try:
                self.on_verify()
            except Exception:
                logger.exception("verification cycle failed")
        with self._lock:
            self._last_verify = time.time()

    def _update_subscriptions(self) -> None:
        logger.info("starting automatic subscription update")
        if self.refresh is not None:
            try:
                self.refresh()
            except Exception:
                logger.exception("subscription update failed")
                return
        if self.on_update is not None:
            try:
                self.on_update()
            except Exception:
                logger.exception("on_update callback failed")
        if self.on_pipeline is None:
            return
        try:
            auto_pipeline = self.store.get_settings().auto_pipeline
        except Exception:
            logger.exception("failed to read settings for auto pipeline")
            return
        if auto_pipeline:
            try:
                self.on_pipeline()
            except Exception:
                logger.exception("pipeline run failed")
