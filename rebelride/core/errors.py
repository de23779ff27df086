"""Domain-specific errors for rebelride."""


class RebelRideError(Exception):
    """Base error for rebelride."""


class InvalidAddressError(RebelRideError):
    """Raised when a device identifier is not a valid Bluetooth address."""


class PermissionDeniedError(RebelRideError):
    """Raised when the host has not granted the required Bluetooth permissions."""


class CooldownActiveError(RebelRideError):
    """Raised when the wake command is issued again inside its lockout window."""


class ScanError(RebelRideError):
    """Raised when scanning for nearby devices fails."""


class SettingsError(RebelRideError):
    """Base error for persisted settings."""


class SettingsLoadError(SettingsError):
    """Raised when the settings file cannot be read or written."""


class SettingsValidationError(SettingsError):
    """Raised when the settings file does not conform to schema."""


class TransportError(RebelRideError):
    """Base transport error."""


class TransportUnavailableError(TransportError):
    """Raised when there is no usable Bluetooth adapter."""


class TransportDisabledError(TransportError):
    """Raised when the Bluetooth adapter is present but powered off."""


class ConnectFailedError(TransportError):
    """Raised when a link to the device cannot be opened."""


class WriteFailedError(TransportError):
    """Raised or reported when a characteristic write is rejected."""

    def __init__(self, status: int, message: str | None = None) -> None:
        self.status = status
        super().__init__(message or f"Write failed with status: {status}")


class DiscoveryFailedError(RebelRideError):
    """Raised when GATT service discovery reports a failure status."""

    def __init__(self, status: int) -> None:
        self.status = status
        super().__init__(f"Service discovery failed with status: {status}")


class AttributeResolutionError(RebelRideError):
    """Base error for missing GATT attributes."""


class ServiceNotFoundError(AttributeResolutionError):
    """Raised when the scooter service is absent from the discovered topology."""

    def __init__(self, uuid: str) -> None:
        self.uuid = uuid
        super().__init__(f"Service not found! UUID: {uuid}")


class CharacteristicNotFoundError(AttributeResolutionError):
    """Raised when the write or notify characteristic is missing."""

    def __init__(self, which: str, uuid: str) -> None:
        self.which = which
        self.uuid = uuid
        super().__init__(f"{which.capitalize()} characteristic not found! UUID: {uuid}")
