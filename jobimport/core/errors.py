from __future__ import annotations


class JobImportError(RuntimeError):
    pass


class FeedError(JobImportError):
    pass


class FetchError(FeedError):
    """The feed could not be reached (network error, timeout, bad status)."""


class FormatError(FeedError):
    """The feed body was neither parseable XML nor JSON."""


class ValidationError(JobImportError):
    pass


class InfrastructureError(JobImportError):
    """Storage or queue unavailable; the batch should be retried."""


class RunStateError(JobImportError):
    pass


class RunNotFoundError(RunStateError):
    pass
