"""Failure kinds raised by the provenance core.

Callers are expected to tell them apart: ``LedgerUnavailable`` and
``PersistenceFailure`` are worth a retry, ``NotFound`` and ``ValidationError``
are not. Tampering is never raised; ``verify_event`` just returns False.
"""


class ProvenanceError(Exception):
    pass


class ValidationError(ProvenanceError):
    pass


class DuplicateBatch(ValidationError):
    pass


class NotFound(ProvenanceError):
    def __init__(self, batch_id):
        super().__init__(f"batch {batch_id!r} not found")
        self.batch_id = batch_id


class LedgerSubmissionError(ProvenanceError):
    """A single ledger submission failed."""


class LedgerUnavailable(ProvenanceError):
    pass


class PersistenceFailure(ProvenanceError):
    pass


class GenesisSealFailure(ProvenanceError):
    """The batch was stored but its registration event could not be sealed."""

    def __init__(self, batch, cause):
        super().__init__(f"batch {batch.id!r} stored without genesis event: {cause}")
        self.batch = batch
        self.cause = cause
