# functions/scheduler.py
import enum
import logging
import threading
import time

from vbms.errors import ClaimError
from vbms.functions.batch import BatchClaimer, fetch_batch
from vbms.functions.server_checker import run_checks

logger = logging.getLogger(__name__)


class SchedulerState(enum.Enum):
    IDLE = 'idle'
    RUNNING_BATCH = 'running-batch'


class CycleScheduler:
    """Claims and dispatches a batch of servers every ``update_tick`` seconds.

    The first batch runs as soon as ``run`` is called. Dispatch is fire and
    forget: each runner gets its own daemon thread and a new batch is
    claimed on each tick whether or not earlier runners finished. At most
    ``max_runners`` runners are alive at once; a tick only claims as many
    servers as there are free runner slots. A claim failure or a failed
    runner stops the loop and is re-raised from ``run``.
    """

    def __init__(self, app, settings, claimer=None, checker=run_checks, clock=time.monotonic):
        self.app = app
        self.settings = settings
        self.claimer = claimer or BatchClaimer(settings)
        self.checker = checker
        self.clock = clock
        self.state = SchedulerState.IDLE
        self.cycles = 0
        self.fatal_error = None
        self._in_flight = 0
        self._stop = threading.Event()
        self._lock = threading.Lock()

    @property
    def in_flight(self):
        with self._lock:
            return self._in_flight

    def free_slots(self):
        return max(0, self.settings.max_runners - self.in_flight)

    def run_batch(self):
        """Claim, fetch and dispatch one batch. Returns the runner threads."""
        self.state = SchedulerState.RUNNING_BATCH
        try:
            limit = min(self.settings.batch_size, self.free_slots())
            if limit == 0:
                logger.warning(f"All {self.settings.max_runners} runners busy, skipping batch")
                return []

            with self.app.app_context():
                token = self.claimer.claim(limit)
                records = fetch_batch(token)

            threads = [self._dispatch(record) for record in records]
            self.cycles += 1
            return threads
        finally:
            self.state = SchedulerState.IDLE

    def _dispatch(self, record):
        with self._lock:
            self._in_flight += 1
        thread = threading.Thread(target=self._run_checker, args=(record,),
                                  name=f'vbms-runner-{record.id}', daemon=True)
        thread.start()
        return thread

    def _run_checker(self, record):
        try:
            self.checker(self.app, record, self.settings)
        except Exception as e:
            self._fail(e)
        finally:
            with self._lock:
                self._in_flight -= 1

    def _fail(self, error):
        with self._lock:
            if self.fatal_error is None:
                self.fatal_error = error
        self._stop.set()

    def run(self):
        """Run batches until stopped. Raises the first fatal error seen.

        Runner threads are daemons, so a fatal error ends the process
        without waiting for checks still in flight.
        """
        next_tick = self.clock()
        while not self._stop.is_set():
            try:
                self.run_batch()
            except ClaimError as e:
                self._fail(e)
                break

            next_tick += self.settings.update_tick
            now = self.clock()
            if next_tick < now:
                # A slow cycle fires the next tick right away, the rest are dropped
                logger.warning(f"Batch took longer than the {self.settings.update_tick}s tick")
                next_tick = now
            self._stop.wait(next_tick - now)

        if self.fatal_error is not None:
            raise self.fatal_error

    def stop(self):
        self._stop.set()
