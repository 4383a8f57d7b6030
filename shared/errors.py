"""
Error taxonomy shared by the control and worker processes.

Each error carries a stable ``code`` that travels in messages
(e.g. TaskCompleted.error) and log events.
"""


class ExtractorError(Exception):
    """Base class for all extractor errors."""

    code = "extractor_error"


class SurfaceUnavailable(ExtractorError):
    """The worker or its automation surface cannot be reached at start()."""

    code = "surface_unavailable"


class SurfaceNotFound(ExtractorError):
    """The surface's input affordance could not be located for a turn."""

    code = "surface_not_found"


class SubmissionFailed(ExtractorError):
    """The surface never showed a sign of accepting the submitted input."""

    code = "submission_failed"


class StabilityTimeout(ExtractorError):
    """The output stream did not go quiet before the ceiling."""

    code = "stability_timeout"


class ParseFailure(ExtractorError):
    """The harvested output had no parseable structured span."""

    code = "parse_failure"


class LockTimeout(ExtractorError):
    """The single-slot lock was held past the turn deadline."""

    code = "lock_timeout"


class StoreIOError(ExtractorError):
    """Durable storage could not be read or written."""

    code = "store_io_failure"
