import logging

from .client import Credpool
from .__version__ import __version__
from .core.config import CredpoolConfig
from .core.exceptions import (
    ConfigError,
    CredpoolError,
    EmptyInputError,
    ImportParseError,
    UnrecognizedFormatError,
    VerificationFailed,
)
from .core.logging_config import configure_logging
from .core.models import (
    Account,
    AccountFilter,
    AccountStats,
    AccountStatus,
    AuthMethod,
    BatchOpReport,
    CandidateCredential,
    Credentials,
    IdP,
    ImportReport,
    Subscription,
    SubscriptionType,
    Usage,
    VerificationError,
    VerificationErrorKind,
)
from .core.repos import AccountsRepo
from .core.store import AccountStore

logging.getLogger("Credpool").addHandler(logging.NullHandler())

__all__ = [
    "Credpool",
    "CredpoolConfig",
    "AccountStore",
    "AccountsRepo",
    "configure_logging",
    "Account",
    "AccountFilter",
    "AccountStats",
    "AccountStatus",
    "AuthMethod",
    "BatchOpReport",
    "CandidateCredential",
    "Credentials",
    "IdP",
    "ImportReport",
    "Subscription",
    "SubscriptionType",
    "Usage",
    "VerificationError",
    "VerificationErrorKind",
    "CredpoolError",
    "ConfigError",
    "ImportParseError",
    "EmptyInputError",
    "UnrecognizedFormatError",
    "VerificationFailed",
]
