# functions/batch.py
import logging
import threading
import time

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from vbms.errors import ClaimError
from vbms.extensions import db
from vbms.models import Server

logger = logging.getLogger(__name__)


class BatchClaimer:
    """Marks a bounded set of stale servers as claimed for the current cycle.

    The claim token is the timestamp written to ``lastupdate``. Tokens are
    strictly increasing so that two claims within the same second can still
    be told apart. Eligible rows are taken in ascending id order; rows that
    were never claimed (NULL ``lastupdate``) count as stale.
    """

    def __init__(self, settings, clock=time.time):
        self.settings = settings
        self.clock = clock
        self._last_token = 0
        self._lock = threading.Lock()

    def _next_token(self):
        with self._lock:
            token = max(int(self.clock()), self._last_token + 1)
            self._last_token = token
        return token

    def claim(self, size=None):
        """Claim up to size (at most batch_size) stale servers. Needs an application context."""
        size = self.settings.batch_size if size is None else min(size, self.settings.batch_size)
        now = self._next_token()
        limit = now - self.settings.staleness_window

        # sqlite has no LIMIT on UPDATE, so select the ids in a subquery
        eligible = (
            select(Server.id)
            .where(or_(Server.last_update.is_(None), Server.last_update < limit))
            .order_by(Server.id)
            .limit(size)
        )
        stmt = (
            update(Server)
            .where(Server.id.in_(eligible))
            .values({Server.last_update: now})
            .execution_options(synchronize_session=False)
        )
        try:
            result = db.session.execute(stmt)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise ClaimError(f"Unable to claim a batch of servers: {e}") from e

        logger.info(f"Batch of {result.rowcount} servers queued for updates")
        return now


def fetch_batch(token):
    """Load the servers claimed with token as detached ServerRecords."""
    try:
        servers = Server.query.filter_by(last_update=token).order_by(Server.id).all()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise ClaimError(f"Unable to select rows from database: {e}") from e
    return [server.snapshot() for server in servers]
