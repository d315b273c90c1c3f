"""
Runtime wiring - 运行时组装

One object owning the store, event bus, probe, verification engine, pipeline
and scheduler, so the HTTP layer and tests share the same construction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .core.events import EventBus
from .core.settings import DATA_DIR, DB_PATH, SINGBOX_PATH
from .core.workers import spawn_worker
from .db import SQLiteStore
from .models import VerificationLog
from .services.checks import NodeChecker
from .services.geo import GeoChecker
from .services.pipeline import PipelineRunner
from .services.probe import ProbeManager
from .services.scheduler import Scheduler
from .services.subscriptions import SubscriptionRefresher
from .services.verifier import VerificationEngine

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    store: SQLiteStore
    bus: EventBus
    probe: ProbeManager
    engine: VerificationEngine
    pipeline: PipelineRunner
    refresher: SubscriptionRefresher
    scheduler: Scheduler
    data_dir: str = DATA_DIR

    def start(self) -> None:
        self.store.init_db()
        status = self.scheduler.start()
        logger.info("scheduler start: %s (%s)", status.value, self.scheduler.describe())

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.probe.stop()

    def verify_now(self, tags: Optional[List[str]] = None) -> Optional[VerificationLog]:
        """Manual verification; resets the periodic timer when a cycle actually ran."""
        log = self.engine.run_for_tags(tags) if tags else self.engine.run()
        if log is not None:
            self.scheduler.mark_manual_verification_run()
        return log

    def verify_in_background(self, tags: Optional[List[str]] = None) -> bool:
        if self.engine.is_running():
            return False
        spawn_worker(self.verify_now, tags, label="manual-verify")
        return True


def build_runtime(
    data_dir: str = DATA_DIR,
    db_path: str = DB_PATH,
    singbox_path: str = SINGBOX_PATH,
    on_change: Optional[Callable[[], Any]] = None,
    minute: float = 60.0,
) -> Runtime:
    store = SQLiteStore(db_path)
    bus = EventBus()
    probe = ProbeManager(singbox_path=singbox_path, data_dir=data_dir, bus=bus)
    checker = NodeChecker(store, bus)
    engine = VerificationEngine(
        store, probe, bus=bus, checker=checker, geo=GeoChecker(store, bus), on_change=on_change
    )
    pipeline = PipelineRunner(store, probe, checker, lock=engine.cycle_lock, on_change=on_change)
    refresher = SubscriptionRefresher(store)
    scheduler = Scheduler(
        store,
        refresh=refresher.refresh_all,
        on_update=on_change,
        on_verify=engine.run,
        on_pipeline=pipeline.run_all,
        bus=bus,
        minute=minute,
    )
    return Runtime(
        store=store,
        bus=bus,
        probe=probe,
        engine=engine,
        pipeline=pipeline,
        refresher=refresher,
        scheduler=scheduler,
        data_dir=data_dir,
    )
