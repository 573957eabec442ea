"""
Error types of the asset tree services

Configuration errors are fatal at startup. Cancellation errors abort the
running pass. The other failures are logged where they happen and skipped.
"""

from typing import Any, Optional


class AssetTreeError(Exception):
    """Base error, carrying a message fit for the operator"""

    def __init__(self, message: str = "", user_message: str = ""):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message


#-----------------------------------------------------------------------------

class ConfigurationError(AssetTreeError):
    """Missing or invalid setting"""


class GraphLocationError(ConfigurationError):
    """The configured graph location cannot be opened"""


class TemplateNotFoundError(ConfigurationError):
    """A hierarchy level names a template the graph does not define"""

    def __init__(self, template: str):
        super().__init__(f"Template '{template}' is not defined in the asset graph.")
        self.template = template

#-----------------------------------------------------------------------------

class PagingTimeoutError(AssetTreeError):
    """A paged query ran longer than its max wait"""


class PagingStoppedError(AssetTreeError):
    """A paged query observed the stop signal"""


class QueryCancelledError(AssetTreeError):
    """Raised by a store when a paged query was cancelled

    The cause is recorded on the PagingConfig the query was given.
    """

    def __init__(self, message: str = "", cause: Optional[AssetTreeError] = None):
        super().__init__(message or (str(cause) if cause else "Query cancelled."))
        self.cause = cause

#-----------------------------------------------------------------------------

class SubscriptionError(AssetTreeError):
    """Signing up for live value changes failed"""


class WriteError(AssetTreeError):
    """One failed entry of a bulk write or point resolution"""

    def __init__(self, target: Any, message: str):
        super().__init__(message)
        self.target = target

    def __str__(self) -> str:
        name = getattr(self.target, "path", None) or getattr(self.target, "name", None) or str(self.target)
        return f"{name}: {self.message}"
