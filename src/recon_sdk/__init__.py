# recon_sdk package
__version__ = "0.1.0"

# Reconciliation first: the connectors import its models
from .reconciliation import (
    ReconciliationJobManager,
    ReconciliationEngine,
    PremiumReconciliationEngine,
    ReconciliationReporter,
    SingleFlightGuard,
    RECONCILIATION_CONFIGS,
)
from .database import (
    ReconciliationJob,
    ReconciliationCheck,
    ReconciliationDiscrepancy,
    JobStatus,
    init_db,
    close_db,
)
from .errors import (
    ReconciliationError,
    AlreadyInProgressError,
    NotFoundError,
    AlreadyResolvedError,
    AdapterFailure,
    SetupFailure,
    InvalidRequestError,
)
