"""Direct-debit recurring billing and collections.

Flows, in the order they run for one billing period:

- ``anchor``: materialize cycles, charges and attempts on the anchor date
- ``presentment``: group due attempts into an outbound bank file
- ``importer``: apply the bank's response file back onto attempts and charges
- ``reconciliation``: the single paid-closure path shared by every channel
"""

from app.services.collections.anchor import AnchorRunner, anchor_runner, run_anchor
from app.services.collections.dunning import DunningHook, dunning
from app.services.collections.fiscal import (
    FiscalIssuer,
    autorun_for_paid_charges,
    fiscal_issuer,
    issue_fiscal_document,
)
from app.services.collections.importer import (
    ResponseBatchImporter,
    import_response_batch,
    response_importer,
)
from app.services.collections.presentment import (
    PresentmentBatchBuilder,
    create_presentment_batch,
    download_batch_file,
    export_pending_prepared_batches,
    export_presentment_batch,
    list_batches,
    prepare_presentment_batch,
    presentment_batches,
)
from app.services.collections.reconciliation import (
    ReconciliationEngine,
    close_charge_as_paid,
    reconciliation,
)

__all__ = [
    "AnchorRunner",
    "DunningHook",
    "FiscalIssuer",
    "PresentmentBatchBuilder",
    "ReconciliationEngine",
    "ResponseBatchImporter",
    "anchor_runner",
    "autorun_for_paid_charges",
    "close_charge_as_paid",
    "create_presentment_batch",
    "download_batch_file",
    "dunning",
    "export_pending_prepared_batches",
    "export_presentment_batch",
    "fiscal_issuer",
    "import_response_batch",
    "issue_fiscal_document",
    "list_batches",
    "prepare_presentment_batch",
    "presentment_batches",
    "reconciliation",
    "response_importer",
    "run_anchor",
]
