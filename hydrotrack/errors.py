"""Error taxonomy shared by the worker, the services and the routers.

Transient errors are retried by re-queuing the job until it runs out of
attempts. Permanent errors move the job straight to ``error``. Limit errors
are raised synchronously to HTTP callers and never queued.
"""


class JobError(Exception):
    """Base class for failures raised while processing a job."""


class TransientJobError(JobError):
    """Network, store or provider hiccup. Safe to retry."""


class PermanentJobError(JobError):
    """Retrying cannot succeed."""


class InvalidPayloadError(PermanentJobError):
    pass


class NothingDetectedError(PermanentJobError):
    """The inference provider found no container or liquid."""


class ZeroHydrationError(PermanentJobError):
    """The liquid contributes no hydration (alcohol)."""


class DailyLimitExceeded(Exception):
    def __init__(self, kind: str, current: int, limit: int):
        self.kind = kind
        self.current = current
        self.limit = limit
        super().__init__(f"Daily limit of {limit} {kind.replace('_', ' ')} reached ({current}/{limit})")
