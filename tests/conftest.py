import os
import sqlite3
import tempfile
import uuid
from datetime import date
from decimal import Decimal

# app.db builds its engine and the Celery app reads its schedule at import time.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+pysqlite:///{os.path.join(tempfile.gettempdir(), 'collections-import.db')}",
)
os.environ.setdefault("BILLING_BATCH_STORAGE_BACKEND", "local")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)

from app.models import (
    BillingPaymentMethod,
    BillingSubscription,
    FxRate,
    MandateStatus,
    PaymentMethodStatus,
    PaymentMethodType,
    SettingDomain,
    SubscriptionStatus,
)
from app.services import settings_spec
from app.services.object_storage import LocalStorageService

ANCHOR = date(2026, 3, 10)
FX_TYPE = "DOLAR_BSP"


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        # Use PostgreSQL for tests (recommended)
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

        # pysqlite only emits SAVEPOINT correctly when it leaves BEGIN to us.
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, _connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(connection):
            connection.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)

    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def collections_setting(db_session):
    """Set a collections domain setting for the current test."""

    def _set(key: str, value):
        setting = settings_spec.set_value(db_session, SettingDomain.collections, key, value)
        db_session.commit()
        return setting

    return _set


@pytest.fixture()
def batch_storage(tmp_path, monkeypatch):
    storage = LocalStorageService(tmp_path / "batches")
    monkeypatch.setattr(
        "app.services.collections.storage.get_batch_storage", lambda: storage
    )
    return storage


@pytest.fixture()
def tenant_id():
    return uuid.uuid4()


@pytest.fixture()
def subscription(db_session, tenant_id):
    subscription = BillingSubscription(
        tenant_id=tenant_id,
        status=SubscriptionStatus.active,
        plan_key="fiber-300",
        plan_price_usd=Decimal("100.00"),
        anchor_day=ANCHOR.day,
    )
    db_session.add(subscription)
    db_session.commit()
    db_session.refresh(subscription)
    return subscription


@pytest.fixture()
def payment_method(db_session, subscription):
    method = BillingPaymentMethod(
        subscription_id=subscription.id,
        method_type=PaymentMethodType.direct_debit_cbu,
        status=PaymentMethodStatus.active,
        is_default=True,
        holder_name="Ana Test",
        holder_tax_id="27111222333",
        mandate_status=MandateStatus.active,
        mandate_account_last4="4321",
    )
    db_session.add(method)
    db_session.commit()
    db_session.refresh(method)
    return method


@pytest.fixture()
def fx_rate(db_session):
    rate = FxRate(fx_type=FX_TYPE, rate_date=ANCHOR, ars_per_usd=Decimal("1000.0000"))
    db_session.add(rate)
    db_session.commit()
    return rate


@pytest.fixture()
def anchored_charge(db_session, subscription, payment_method, fx_rate):
    """Charge and attempts materialized by an anchor run on ``ANCHOR``."""
    from app.models.billing import Charge
    from app.services.collections import run_anchor

    run_anchor(db_session, anchor_date=ANCHOR)
    return db_session.query(Charge).filter(Charge.subscription_id == subscription.id).one()


@pytest.fixture()
def exported_batch(db_session, anchored_charge, batch_storage):
    """Outbound debug_csv batch for ``ANCHOR`` holding the charge's first attempt."""
    from app.models.collections import FileBatch
    from app.services.collections import export_presentment_batch, prepare_presentment_batch

    prepared = prepare_presentment_batch(db_session, business_date=ANCHOR)
    export_presentment_batch(db_session, prepared.batch_id)
    return db_session.get(FileBatch, prepared.batch_id)
