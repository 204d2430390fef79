from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


class RunRecord(Base):
    """One invocation of a run-affecting command"""
    __tablename__ = 'runs'

    id = Column(Integer, primary_key=True)
    command = Column(String(20), nullable=False)  # init, list, run, prune, unlock
    status = Column(String(20), nullable=False)  # running, success, partial, failed
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)
    elapsed_seconds = Column(Float)
    error_message = Column(Text)

    # Relationship
    operations = relationship(
        'OperationRecord', back_populates='run', cascade='all, delete-orphan',
        order_by='OperationRecord.id'
    )

    def __repr__(self):
        return f'<RunRecord {self.command} status={self.status}>'


class OperationRecord(Base):
    """Outcome of one backend or dump operation on one repository"""
    __tablename__ = 'operations'

    id = Column(Integer, primary_key=True)
    run_id = Column(Integer, ForeignKey('runs.id'), nullable=False)
    target_id = Column(String(255), nullable=False)
    operation = Column(String(20), nullable=False)
    outcome = Column(String(20), nullable=False)  # success, already_exists, soft_failure, fatal_failure
    message = Column(Text)
    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationship
    run = relationship('RunRecord', back_populates='operations')

    def __repr__(self):
        return f'<OperationRecord {self.operation} target={self.target_id} outcome={self.outcome}>'
