import logging
import os
import socket
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from core.database import SessionFactory
from core.timeutils import Clock, utcnow
from models.models import SchedulerLease

logger = logging.getLogger(__name__)


class LeaderLease:
    """
    A named, expiring lease row so only one process runs a periodic job.

    Acquisition is a conditional UPDATE (take it if it expired or is already
    ours), falling back to an INSERT the first time the job ever runs. A
    holder that dies simply lets the lease expire.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        name: str,
        ttl_seconds: int = 600,
        holder: Optional[str] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.name = name
        self.ttl = timedelta(seconds=ttl_seconds)
        self.holder = holder or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self.clock = clock

    def acquire(self) -> bool:
        now = self.clock()
        with self.session_factory() as session:
            result = session.connection().execute(
                update(SchedulerLease)
                .where(SchedulerLease.name == self.name)
                .where(or_(SchedulerLease.expires_at <= now, SchedulerLease.holder == self.holder))
                .values(holder=self.holder, expires_at=now + self.ttl)
            )
            if result.rowcount == 1:
                session.commit()
                return True

            if session.get(SchedulerLease, self.name) is not None:
                session.rollback()
                logger.debug("⏳ Lease %s held by another process", self.name)
                return False

            session.add(SchedulerLease(name=self.name, holder=self.holder, expires_at=now + self.ttl))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def release(self) -> None:
        with self.session_factory() as session:
            session.connection().execute(
                update(SchedulerLease)
                .where(SchedulerLease.name == self.name)
                .where(SchedulerLease.holder == self.holder)
                .values(expires_at=self.clock())
            )
            session.commit()
