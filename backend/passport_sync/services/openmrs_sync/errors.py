from __future__ import annotations


class SyncError(Exception):
    """Base class for errors raised by the OpenMRS sync engine."""


class SourceUnavailable(SyncError):
    """The OpenMRS store could not be reached or queried."""


class DestinationUnavailable(SyncError):
    """The patient-record store rejected or failed a read/write."""


class SyncAlreadyRunning(SyncError):
    """A sync run was requested while another one is still in flight."""
