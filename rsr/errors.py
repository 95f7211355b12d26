from __future__ import annotations


class RSRError(Exception):
    """Base class for every error the reconciler handles per service."""


class InspectionError(RSRError):
    """The container runtime could not be queried, or the target vanished."""


class ProbeError(RSRError):
    """The health endpoint could not be reached or its response was unusable.

    Never escapes rsr.health: it collapses to unhealthy / ABSENT.
    """


class SynthesisError(RSRError):
    """Replica creation was rejected or the primary's image could not be read."""


class ConfigError(RSRError):
    """A service entry (or the whole configuration file) is malformed."""

    def __init__(self, message: str, service: str | None = None):
        super().__init__(message)
        self.service = service
