class CompetitorAlertError(Exception):
    """Base class for pipeline errors."""


class QuotaExceededError(CompetitorAlertError):
    """Raised at admission when the monthly search budget is spent."""


class SearchProviderError(CompetitorAlertError):
    """A single search attempt failed (network error, non-2xx, bad body)."""


class PersistenceError(CompetitorAlertError):
    """The record store could not be read or written."""


class NotificationError(CompetitorAlertError):
    """An email or webhook notification could not be delivered."""


class AlertNotFoundError(CompetitorAlertError):
    pass


class InvalidRunTransitionError(CompetitorAlertError):
    pass
