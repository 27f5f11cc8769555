# fhir_server/errors.py


class FhirServerError(Exception):
    """Base class for errors raised by the mapper and the repository."""
    pass


class TypeMismatch(FhirServerError):
    """Incoming resource is not an Observation."""
    pass


class NullInput(FhirServerError):
    """Mapper was handed no observation to map."""
    pass


class MalformedDateTime(FhirServerError):
    """A FHIR dateTime/instant string could not be parsed."""

    def __init__(self, value: str):
        super().__init__(f"Malformed FHIR date-time: {value!r}")
        self.value = value


class ConcurrencyConflict(FhirServerError):
    """
    The current-state row changed (or the version was taken) between read and commit.
    Callers should surface this as a retryable conflict.
    """
    pass
