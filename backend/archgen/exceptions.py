class DesignRequestValidationError(ValueError):
    """The submitted request cannot be accepted; nothing was written."""


class NoPriorVersionError(DesignRequestValidationError):
    def __init__(self, message: str = "No existing design version to refine"):
        super().__init__(message)


class DesignRequestNotFoundError(LookupError):
    pass


class JobNotFoundError(LookupError):
    pass


class VersionConflictError(RuntimeError):
    """Allocating the next version number kept colliding with concurrent writers."""


class VersionNotFoundError(LookupError):
    pass
