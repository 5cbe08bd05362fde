from app.models.billing import (  # noqa: F401
    OPEN_ATTEMPT_STATUSES,
    AdjustmentKind,
    AdjustmentValueType,
    Attempt,
    AttemptStatus,
    BillingAdjustment,
    BillingCycle,
    BillingCycleStatus,
    BillingPaymentMethod,
    BillingSubscription,
    Charge,
    ChargeStatus,
    FiscalDocument,
    FiscalDocumentStatus,
    FxRate,
    MandateStatus,
    PaymentMethodStatus,
    PaymentMethodType,
    ReconciliationStatus,
    SubscriptionStatus,
)
from app.models.collections import (  # noqa: F401
    FileBatch,
    FileBatchDirection,
    FileBatchItem,
    FileBatchItemStatus,
    FileBatchStatus,
    FileImportRun,
    FileImportRunStatus,
)
from app.models.domain_settings import (  # noqa: F401
    DomainSetting,
    SettingDomain,
    SettingValueType,
)
from app.models.event_store import BillingEvent  # noqa: F401
from app.models.sequence import TenantCounter  # noqa: F401
