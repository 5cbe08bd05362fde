import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.sequence import GLOBAL_COUNTER_SCOPE, TenantCounter
from app.services.common import coerce_uuid

CHARGE_NUMBER_KEY = "billing_charge"
BATCH_NUMBER_KEY = "billing_file_batch"


def _locked_counter(db: Session, tenant_id: uuid.UUID, key: str) -> TenantCounter | None:
    return (
        db.query(TenantCounter)
        .filter(TenantCounter.tenant_id == tenant_id)
        .filter(TenantCounter.key == key)
        .with_for_update()
        .first()
    )


def next_tenant_counter(
    db: Session, tenant_id, key: str, start_value: int = 1
) -> int:
    """Atomically increment and return the counter for ``(tenant_id, key)``.

    The row is locked for the rest of the caller's transaction. On first use
    the row is inserted inside a savepoint; if a concurrent caller won the
    insert, the existing row is locked and incremented instead.
    """
    scope = coerce_uuid(tenant_id) or GLOBAL_COUNTER_SCOPE
    counter = _locked_counter(db, scope, key)
    if not counter:
        nested = db.begin_nested()
        try:
            counter = TenantCounter(tenant_id=scope, key=key, next_value=start_value)
            db.add(counter)
            db.flush()
            nested.commit()
        except IntegrityError:
            nested.rollback()
            counter = _locked_counter(db, scope, key)
    value = counter.next_value
    counter.next_value = value + 1
    db.flush()
    return value


def next_charge_number(db: Session, tenant_id) -> int:
    return next_tenant_counter(db, tenant_id, CHARGE_NUMBER_KEY)


def next_batch_number(db: Session) -> int:
    return next_tenant_counter(db, GLOBAL_COUNTER_SCOPE, BATCH_NUMBER_KEY)
