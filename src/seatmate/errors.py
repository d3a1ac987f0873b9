"""Exception hierarchy for Seatmate."""


class SeatmateError(Exception):
    """Base exception."""


class AuthError(SeatmateError):
    """Login failed or the session could not be established."""


class CatalogError(SeatmateError):
    """Area, period or seat inventory could not be fetched."""


class BookingError(SeatmateError):
    """Booking request failed before the provider gave a usable answer."""


class ConfigError(SeatmateError):
    """Invalid configuration."""
