"""Billing error taxonomy shared by services and routers."""


class BillingError(Exception):
    """Base class for billing failures."""


class BillingValidationError(BillingError):
    """Malformed tier/price/date input or corrupt stored state. Never retried."""


class NotFoundError(BillingError):
    pass


class InvalidStateError(BillingError):
    """Operation not allowed in the document's current lifecycle state."""


class TransientVerificationError(BillingError):
    """Verification could not complete (DNS or gateway outage). Ask the provider to retry."""


class ConfigurationError(BillingError):
    """Required gateway or collaborator settings are missing."""


class StorageUnavailableError(BillingError):
    """The document storage collaborator failed after its retry."""
