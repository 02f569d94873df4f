# functions/server_checker.py
import logging
import threading
import time

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from vbms.errors import PersistError
from vbms.extensions import db
from vbms.functions.probes import run_probe
from vbms.models import PROTOCOLS, Server

logger = logging.getLogger(__name__)

CHECK_TIMED_OUT = "Check timed out"


def persist_results(record):
    """Write all five result columns of a server in one UPDATE keyed by id.

    Needs an application context. Store errors raise PersistError.
    """
    values = {getattr(Server, attr): value for attr, value in record.result_columns().items()}
    try:
        db.session.execute(update(Server).where(Server.id == record.id).values(values))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise PersistError(record.id, f"Unable to update results for server {record.id}: {e}") from e
    logger.debug(f"Stored results for server {record.id}",
                 extra={'server': record.hostname, 'service': '-', 'port': '-'})


class _ProbeRun:
    """Collects the outcome of each protocol check for one server."""

    def __init__(self, record, timeout):
        self.record = record
        self.timeout = timeout
        self.outcomes = {}
        self.lock = threading.Lock()

    def __call__(self, protocol):
        try:
            result = run_probe(protocol, self.record, self.timeout)
        except Exception as e:
            logger.exception(f"{protocol} check crashed",
                             extra={'server': self.record.hostname, 'service': protocol, 'port': '-'})
            result = f"Failed ({e})"
        with self.lock:
            self.outcomes[protocol] = result

    def finished(self):
        with self.lock:
            return dict(self.outcomes)


def run_checks(app, record, settings):
    """Run every protocol check for one server and store the results.

    All five protocols are started; disabled ones finish immediately
    without touching their result. Checks still running when the deadline
    expires are recorded as timed out. Their daemon threads are abandoned
    and never write to the record.
    """
    with app.app_context():
        probe_run = _ProbeRun(record, settings.probe_timeout)
        threads = []
        for protocol in PROTOCOLS:
            thread = threading.Thread(target=probe_run, args=(protocol.name,),
                                      name=f'vbms-{protocol.name.lower()}-{record.id}', daemon=True)
            thread.start()
            threads.append(thread)

        if settings.early_persist:
            # Writes whatever results the record held before this cycle
            persist_results(record)

        deadline = time.monotonic() + settings.probe_deadline
        for thread in threads:
            thread.join(max(0, deadline - time.monotonic()))

        finished = probe_run.finished()
        for protocol in PROTOCOLS:
            if protocol.name not in finished:
                record.results[protocol.name] = CHECK_TIMED_OUT
                logger.error(CHECK_TIMED_OUT, extra={'server': record.hostname, 'service': protocol.name,
                                                     'port': record.port_for(protocol.name)})
            elif finished[protocol.name] is not None:
                # None means the check is disabled; keep the previous text
                record.results[protocol.name] = finished[protocol.name]

        if not settings.early_persist:
            persist_results(record)
    return record
