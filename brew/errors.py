"""Exception types raised by nano-brew commands."""

from __future__ import annotations


class BrewError(RuntimeError):
    """Base class for every error raised by nano-brew."""


class ConfigurationError(BrewError, ValueError):
    """Invalid or conflicting user input; nothing has been executed yet."""


class UnknownCommandError(ConfigurationError):
    """The requested CLI command is not registered."""


class UnsupportedTransportError(ConfigurationError):
    """The requested distributed transport is unknown or unavailable here."""


class DumpIOError(BrewError):
    """A tensor dump needed to continue could not be read or written."""


class SynchronizationError(BrewError):
    """A replica or peer failed while the group was synchronizing."""


class OutputDirectoryError(DumpIOError):
    """An output directory for dumps could not be created."""
