"""Error taxonomy shared by the pipeline stages and user actions."""


class IntroEngineError(Exception):
    """Base class for all IntroEngine errors."""


class ValidationError(IntroEngineError):
    """Malformed input (ICP, opportunity fields, status). Raised before any write."""


class NotFoundError(IntroEngineError):
    """Referenced row is absent or belongs to another user."""


class ServiceError(IntroEngineError):
    """External completion or enrichment call failed, timed out, or returned garbage."""


class ConflictError(IntroEngineError):
    """Concurrent write on the same natural key, or an overlapping account run."""
