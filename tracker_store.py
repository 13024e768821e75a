"""
tracker_store.py - Relational store for the payment tracker

Tables:
- users: local account records, keyed by the identity provider's user id
- insurance_payments: imported insurance remittance lines
- venmo_payments: patient-paid amounts
- user_settings: per-account settings (ignored payee addresses)

Every payment row belongs to exactly one user; all reads and writes in
tracker_api filter on user_id.
"""
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from tracker_schemas import TrackingStatus

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///payment_tracker.db"

Base = declarative_base()


def _now():
    return datetime.now(timezone.utc)


def _money(value):
    return float(value) if value is not None else 0.0


class User(Base):
    __tablename__ = 'users'

    id = Column(String(64), primary_key=True)  # identity provider user id
    email = Column(String(255), unique=True, nullable=True)
    username = Column(String(50), unique=True, nullable=True)
    name = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email or "",
            'username': self.username or "",
            'name': self.name or "",
        }


class InsurancePayment(Base):
    """Insurance remittance line"""
    __tablename__ = 'insurance_payments'

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    claim_status = Column(String(255))
    dates_of_service = Column(String(100))
    member_subscriber_id = Column(String(100), nullable=False, default="", index=True)
    provider_name = Column(String(255))
    payment_date = Column(String(50))
    claim_number = Column(String(100))
    check_number = Column(String(100))
    check_eft_amount = Column(Numeric(10, 2), nullable=False, default=0)
    payee_name = Column(String(255), nullable=False)
    payee_address = Column(Text)
    tracking_status = Column(Enum(TrackingStatus), nullable=False, default=TrackingStatus.PENDING)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    def to_dict(self):
        return {
            'id': self.id,
            'claim_status': self.claim_status or "",
            'dates_of_service': self.dates_of_service or "",
            'member_subscriber_id': self.member_subscriber_id or "",
            'provider_name': self.provider_name or "",
            'payment_date': self.payment_date or "",
            'claim_number': self.claim_number or "",
            'check_number': self.check_number or "",
            'check_eft_amount': _money(self.check_eft_amount),
            'payee_name': self.payee_name,
            'payee_address': self.payee_address or "",
            'tracking_status': self.tracking_status.value if self.tracking_status else TrackingStatus.PENDING.value,
        }


class VenmoPayment(Base):
    """Patient payment received through Venmo"""
    __tablename__ = 'venmo_payments'

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    patient_name = Column(String(255), nullable=False)
    member_subscriber_id = Column(String(100), nullable=False, default="", index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    date = Column(String(50), nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            'id': self.id,
            'patient_name': self.patient_name,
            'member_subscriber_id': self.member_subscriber_id or "",
            'amount': _money(self.amount),
            'date': self.date,
            'notes': self.notes or "",
        }


class UserSetting(Base):
    __tablename__ = 'user_settings'

    user_id = Column(String(64), ForeignKey('users.id', ondelete='CASCADE'), primary_key=True)
    ignored_addresses = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    def to_dict(self):
        return {'ignored_addresses': list(self.ignored_addresses or [])}


# ------------------------- Engine & Sessions -------------------------

def database_url():
    return os.environ.get("PAYMENT_TRACKER_DATABASE_URL", DEFAULT_DATABASE_URL)


def make_engine(url=None):
    """
    Create an engine for the given URL (or the configured one).

    SQLite connections are shared across Streamlit's script threads, and an
    in-memory database must keep a single connection to keep its data.
    """
    url = url or database_url()
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


class Store:
    """Owns the engine and hands out transactional sessions."""

    def __init__(self, url=None, engine=None):
        self.engine = engine if engine is not None else make_engine(url)
        Base.metadata.create_all(self.engine)
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"✓ Store ready: {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def session(self):
        """Session that commits on success and rolls back on any error."""
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
