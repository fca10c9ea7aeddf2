"""Scheduler exceptions."""


class SchedulerError(Exception):
    """Base class for taskbeat scheduler errors."""


class InvalidJobError(SchedulerError):
    """A job definition or management request was rejected."""


class JobNotFoundError(SchedulerError):
    pass


class JobConflictError(SchedulerError):
    """Duplicate task id, or the job is leased by someone else."""


class RunRecordError(SchedulerError):
    """Run history could not be written.

    Raised only by RunRecorder implementations; the tick logs and drops it.
    """
