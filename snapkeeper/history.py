"""
Persistent run history.

Stores every run-affecting invocation and each operation result it produced
in a SQLAlchemy database (SQLite by default).
"""

import os
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload, sessionmaker

from snapkeeper.models import Base, RunRecord, OperationRecord


logger = logging.getLogger(__name__)


class HistoryStore:
    """
    Records runs and their operation results.
    """

    def __init__(self, url: str):
        """
        Initialize history store and create missing tables.

        Args:
            url: SQLAlchemy database URL
        """
        url_obj = make_url(url)
        if url_obj.get_backend_name() == 'sqlite' and url_obj.database not in (None, '', ':memory:'):
            directory = os.path.dirname(os.path.expanduser(url_obj.database))
            if directory:
                os.makedirs(directory, exist_ok=True)

        self.engine = create_engine(url)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def start_run(self, command: str) -> RunRecord:
        run = RunRecord(command=command, status='running', started_at=datetime.utcnow())
        with self.Session() as session:
            session.add(run)
            session.commit()
        return run

    def record_operation(self, run: RunRecord, target_id: str, operation: str, outcome: str, message: str = ''):
        with self.Session() as session:
            session.add(OperationRecord(
                run_id=run.id,
                target_id=target_id,
                operation=operation,
                outcome=outcome,
                message=message
            ))
            session.commit()

    def finish_run(self, run: RunRecord, status: str, elapsed_seconds: float, error_message: Optional[str] = None):
        with self.Session() as session:
            record = session.get(RunRecord, run.id)
            record.status = status
            record.completed_at = datetime.utcnow()
            record.elapsed_seconds = elapsed_seconds
            record.error_message = error_message
            session.commit()

    def recent_runs(self, limit: int = 10) -> List[RunRecord]:
        """
        Most recent runs first, with their operations loaded.
        """
        with self.Session() as session:
            return (
                session.query(RunRecord)
                .options(selectinload(RunRecord.operations))
                .order_by(RunRecord.started_at.desc(), RunRecord.id.desc())
                .limit(limit)
                .all()
            )


def open_history(url: str) -> Optional[HistoryStore]:
    """
    Open the configured history store.

    An empty URL disables history. A store that cannot be opened is reported
    and disabled for this invocation; it never prevents a backup.
    """
    if not url:
        return None
    try:
        return HistoryStore(url)
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Run history disabled, cannot open {url}: {e}")
        return None
