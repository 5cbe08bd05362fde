"""Error taxonomy for the direct-debit collections engine."""


class CollectionsError(Exception):
    """Base class for collections failures."""

    code = "collections_error"

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(CollectionsError):
    """Missing or invalid configuration; reported per subscription."""

    code = "configuration_error"


class FxRateMissing(ConfigurationError):
    code = "fx_rate_missing"


class NoEligiblePaymentMethod(ConfigurationError):
    code = "no_eligible_payment_method"


class AdapterMismatch(CollectionsError):
    """The file does not follow the configured adapter's layout."""

    code = "adapter_mismatch"


class ControlTotalsMismatch(AdapterMismatch):
    """Header/trailer totals disagree with the data rows."""

    code = "control_totals_mismatch"


class RowError(CollectionsError):
    """A single data row could not be parsed or matched."""

    code = "row_error"

    def __init__(self, message: str, line_no: int | None = None, **details) -> None:
        super().__init__(message, line_no=line_no, **details)
        self.line_no = line_no


class ConsistencyError(CollectionsError):
    """Stored state does not allow the requested transition."""

    code = "consistency_error"


class BatchNotFound(ConsistencyError):
    code = "batch_not_found"


class ChargeNotFound(ConsistencyError):
    code = "charge_not_found"


class BatchAlreadyReconciled(ConsistencyError):
    code = "batch_already_reconciled"


class FiscalIssuerUnavailable(CollectionsError):
    """The tax-authority issuer could not be reached; the document stays retryable."""

    code = "fiscal_issuer_unavailable"
