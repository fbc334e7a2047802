"""Exceptions raised inside the monitoring pipeline."""


class MonitoringError(Exception):
    """Base class for monitoring errors."""


class ConfigProviderError(MonitoringError):
    """The client configuration source could not be read."""


class ClientConfigurationError(MonitoringError):
    """A client's monitoring configuration is missing or invalid."""

    def __init__(self, client_id: str, message: str):
        self.client_id = client_id
        super().__init__(f"Client {client_id}: {message}")


class MetricFetchError(MonitoringError):
    """Metrics could not be fetched from the metric source."""


class DuplicateAlertError(MonitoringError):
    """An alert with the same (client_id, fingerprint) already exists."""

    def __init__(self, client_id: str, fingerprint: str):
        self.client_id = client_id
        self.fingerprint = fingerprint
        super().__init__(f"Alert already exists for client {client_id} with fingerprint {fingerprint}")


class AlertNotFoundError(MonitoringError):
    """No alert exists with the requested id."""


class AccessDeniedError(MonitoringError):
    """The acting principal may not perform the requested action."""


class InvalidStatusTransitionError(MonitoringError):
    """The requested alert status change is not allowed from the current status."""


class SignalNotFoundError(MonitoringError):
    """No fatigue signal exists with the requested id."""


class AlertUpdateError(MonitoringError):
    """An allowed alert status change could not be written."""
