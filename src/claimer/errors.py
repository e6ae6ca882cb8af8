"""Exception taxonomy.

Only failures that end the process are exceptions. Per-attempt conditions
(no eligible grant, sequence conflicts, rate limits, ...) travel as
``GateVerdict`` / ``OutcomeKind`` values so a single attempt can never take
the scheduler down with it.
"""


class ClaimerError(Exception):
    code = "CLAIMER_ERROR"


class InitializationFailure(ClaimerError):
    """Fatal: the process exits with status 1."""

    code = "INITIALIZATION_FAILURE"


class ConfigMissing(InitializationFailure):
    code = "CONFIG_MISSING"

    def __init__(self, message: str, missing: tuple[str, ...] = ()):
        super().__init__(message)
        self.missing = tuple(missing)


class ConfigInvalid(InitializationFailure):
    code = "CONFIG_INVALID"


class InvalidMnemonic(InitializationFailure):
    code = "INVALID_MNEMONIC"


class InvalidDestination(InitializationFailure):
    code = "INVALID_DESTINATION"
