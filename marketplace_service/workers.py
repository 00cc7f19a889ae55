"""
Periodic background sweeps: hold unlocking, claim expiry and overdue alerts.

Each sweep runs on its own timer in a daemon thread. An iteration that fails
is logged and simply runs again on the next tick; the sweeps commit per
record, so nothing is half-applied.
"""
import logging
import threading
from typing import Callable, List

from common.settings import settings

logger = logging.getLogger(__name__)

class SweepWorker(threading.Thread):
    def __init__(self, name: str, sweep: Callable[[], int], interval: float):
        super().__init__(name=name, daemon=True)
        self.sweep = sweep
        self.interval = interval
        self._stop_event = threading.Event()

    def run_once(self) -> int:
        try:
            processed = self.sweep()
        except Exception:
            logger.exception(f"Sweep {self.name} failed; retrying in {self.interval}s")
            return 0
        if processed:
            logger.info(f"Sweep {self.name} processed {processed} records")
        return processed

    def run(self):
        logger.info(f"🚀 Sweep {self.name} started (every {self.interval}s)")
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval)

    def stop(self):
        self._stop_event.set()

def start_sweeps(ledger, arbiter, escalation) -> List[SweepWorker]:
    workers = [
        SweepWorker("unlock", ledger.unlock_sweep, settings.unlock_sweep_interval),
        SweepWorker("claim-expiry", arbiter.expire_sweep, settings.expiry_sweep_interval),
        SweepWorker("overdue-alerts", escalation.overdue_sweep, settings.overdue_sweep_interval),
    ]
    for worker in workers:
        worker.start()
    return workers

def run():
    """Run the sweeps as a standalone process instead of inside the API."""
    from common.kafka import KafkaEventPublisher
    from marketplace_service.alerts import AlertEscalation
    from marketplace_service.db import SessionLocal
    from marketplace_service.orders import ClaimArbiter
    from marketplace_service.wallet import WalletLedger

    logging.basicConfig(level=logging.INFO)
    publisher = KafkaEventPublisher()
    ledger = WalletLedger(SessionLocal, publisher)
    workers = start_sweeps(
        ledger,
        ClaimArbiter(SessionLocal, ledger, publisher),
        AlertEscalation(SessionLocal, ledger, publisher),
    )
    for worker in workers:
        worker.join()

if __name__ == "__main__":
    run()
