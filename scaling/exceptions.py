# scaling/exceptions.py


class AutoscalerError(Exception):
    """Base class for errors raised by the autoscaling core."""


class ConfigurationError(AutoscalerError):
    """Required configuration is missing or malformed."""


class ProvisioningError(AutoscalerError):
    """The provisioning API rejected or failed a request."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class MetricsUnavailableError(AutoscalerError):
    """Metrics for a service could not be fetched this tick."""


class ServiceNotFoundError(AutoscalerError, LookupError):
    def __init__(self, service_id):
        super().__init__(f"Service not found: {service_id}")
        self.service_id = service_id


class InvalidScalingRequest(AutoscalerError, ValueError):
    """A manual scaling request or rule override failed validation."""
