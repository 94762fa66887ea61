"""Exception taxonomy for the ATQ surveillance engine."""

from __future__ import annotations


class ATQError(Exception):
    """Base class for all errors raised by the engine."""


class ConfigurationError(ATQError, ValueError):
    """Invalid parameter value; raised before any simulation starts."""

    def __init__(self, parameter: str, value: object, reason: str) -> None:
        self.parameter = parameter
        self.value = value
        super().__init__(f"{parameter} {reason}, got {value!r}")


class DataMismatch(ATQError):
    """Epidemic and population inputs do not describe the same system."""


class FitFailure(ATQError):
    """A detection model could not be fitted for one grid cell."""


class InsufficientData(ATQError):
    """Too few usable years to aggregate metrics or select models."""
