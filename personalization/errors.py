"""
Domain errors.

Taxonomy mutation errors are raised to the caller so an admin can correct the
input. Classification and ranking degrade instead of failing: signal
generator errors become ClassificationPartialFailure (logged, never raised out
of the engine) and taste graph errors become TasteGraphUnavailable, which the
ranking engine turns into a recency fallback.
"""
from typing import Optional


class PersonalizationError(Exception):
    """Base error; `field` names the offending input field when there is one."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_detail(self) -> dict:
        return {"field": self.field, "message": self.message}


class NotFoundError(PersonalizationError):
    """Unknown interest, post or user."""


class InvalidParentError(PersonalizationError):
    """Missing/inactive parent, or a parent assignment that would form a cycle."""

    def __init__(self, message: str, field: str = "parent_id") -> None:
        super().__init__(message, field)


class DuplicateInterestError(PersonalizationError):
    """Another interest under the same parent already has this name."""

    def __init__(self, message: str, field: str = "name") -> None:
        super().__init__(message, field)


class ClassificationPartialFailure(PersonalizationError):
    """One signal generator failed while the others still produced candidates."""

    def __init__(self, signal: str, cause: BaseException) -> None:
        super().__init__(f"signal generator '{signal}' failed: {cause!r}", "signals")
        self.signal = signal
        self.cause = cause


class TasteGraphUnavailable(PersonalizationError):
    """Taste graph storage failed or did not answer within the timeout."""
