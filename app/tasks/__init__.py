from app.tasks.collections import export_pending_batches, prepare_presentment_batch, run_anchor

__all__ = [
    "run_anchor",
    "prepare_presentment_batch",
    "export_pending_batches",
]
