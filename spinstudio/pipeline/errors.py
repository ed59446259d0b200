"""
Error taxonomy for the spin pipeline.

Every stage adapter raises one of these; the orchestrator turns whichever one
escapes a stage into the job's single user-facing error message.
"""


class SpinPipelineError(Exception):
    """Base class for all pipeline failures."""


class ValidationError(SpinPipelineError):
    """Bad input detected before any network call."""


class AuthError(SpinPipelineError):
    """No owner identity was supplied."""


class PipelineBusyError(SpinPipelineError):
    """A job is already running (or finished and not yet reset)."""


class UploadError(SpinPipelineError):
    pass


class EnhancementError(SpinPipelineError):
    pass


class GenerationError(SpinPipelineError):
    pass


class GenerationTimeoutError(GenerationError):
    pass


class MalformedResponseError(SpinPipelineError):
    """An upstream service answered, but not in a shape we can use."""


class PersistenceError(SpinPipelineError):
    pass
