"""Exceptions raised by the DomainPilot controller."""

from __future__ import annotations


class DomainPilotError(Exception):
    """Base exception for all controller operations."""

    def __init__(self, message: str, *, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


class InvalidDocument(DomainPilotError):
    """A candidate routing document failed structural validation."""


class ApplyFailure(DomainPilotError):
    """The proxy engine refused (or never acknowledged) a document."""


class EngineError(DomainPilotError):
    """Starting or stopping the proxy engine failed."""


class HostRoutesError(DomainPilotError):
    """The host routes file could not be read."""
