"""
User-facing error messages for failed Source and Sink calls.

Messages are chosen by service and HTTP status; they never echo request
headers, so credentials cannot leak into a SyncSummary.
"""

from __future__ import annotations

from dataclasses import dataclass

from assignsync.connectors.errors import ApiError, ErrorKind


@dataclass(frozen=True)
class FriendlyMessage:
    title: str
    message: str
    action: str

    def one_line(self) -> str:
        return f"{self.title}: {self.message} {self.action}"


_SOURCE_MESSAGES: dict[int, FriendlyMessage] = {
    401: FriendlyMessage(
        "Invalid Source Token",
        "The LMS API token was rejected or has expired.",
        "Create a new access token in the LMS account settings and update the configuration.",
    ),
    403: FriendlyMessage(
        "Source Access Denied",
        "The LMS refused the request for this token.",
        "Check that the token belongs to an account enrolled in the expected courses.",
    ),
    404: FriendlyMessage(
        "Source Resource Not Found",
        "The requested LMS resource does not exist.",
        "Verify the LMS base URL and course enrolments.",
    ),
    500: FriendlyMessage(
        "Source Server Error",
        "The LMS reported an internal error.",
        "Wait a few minutes and run the sync again.",
    ),
    503: FriendlyMessage(
        "Source Unavailable",
        "The LMS is temporarily unavailable.",
        "Check the institution's status page and retry later.",
    ),
}

_SOURCE_THROTTLED = FriendlyMessage(
    "Source Rate Limit",
    "The LMS request quota is exhausted.",
    "Requests are retried automatically; run the sync again later if it keeps failing.",
)

_SINK_MESSAGES: dict[int, FriendlyMessage] = {
    400: FriendlyMessage(
        "Invalid Sink Request",
        "The database rejected the record payload.",
        "Check that the database has the expected properties and types.",
    ),
    401: FriendlyMessage(
        "Invalid Sink Token",
        "The database integration token was rejected or has expired.",
        "Create a new integration token and update the configuration.",
    ),
    403: FriendlyMessage(
        "Sink Permission Denied",
        "The integration has no access to the database.",
        "Share the database with the integration and retry.",
    ),
    404: FriendlyMessage(
        "Database Not Found",
        "The configured database could not be found.",
        "Verify SINK_DATABASE_ID and that the integration is connected to it.",
    ),
    409: FriendlyMessage(
        "Sync Conflict",
        "A concurrent write conflicted with this update.",
        "Conflicts are retried automatically; run the sync again if it persists.",
    ),
    429: FriendlyMessage(
        "Sink Rate Limited",
        "Too many requests were sent to the database API.",
        "Requests are retried automatically; run the sync again later.",
    ),
    500: FriendlyMessage(
        "Sink Server Error",
        "The database API reported an internal error.",
        "Wait a few minutes and run the sync again.",
    ),
    502: FriendlyMessage(
        "Sink Gateway Error",
        "The database API could not be reached through its gateway.",
        "Wait a few minutes and run the sync again.",
    ),
    503: FriendlyMessage(
        "Sink Unavailable",
        "The database API is temporarily unavailable.",
        "Retry later.",
    ),
}

_NETWORK_FAILURE = FriendlyMessage(
    "Network Error",
    "The request did not complete.",
    "Check the network connection and retry.",
)


def friendly_error(error: BaseException, service: str | None = None) -> FriendlyMessage:
    """
    Map an error to a user-facing message.

    Args:
        error: Usually an ApiError; anything else gets the generic message.
        service: "source" or "sink"; defaults to the error's own service.
    """
    if isinstance(error, ApiError):
        service = service or error.service
        if error.status is None and error.kind == ErrorKind.UNKNOWN:
            return _NETWORK_FAILURE
        if service == "source":
            if error.status == 403 and error.kind == ErrorKind.THROTTLED:
                return _SOURCE_THROTTLED
            mapped = _SOURCE_MESSAGES.get(error.status or 0)
        else:
            mapped = _SINK_MESSAGES.get(error.status or 0)
        if mapped is not None:
            return mapped

    label = "Source" if service == "source" else "Sink"
    return FriendlyMessage(
        f"{label} Sync Error",
        str(error) or f"An unexpected error occurred while talking to the {label}.",
        "Retry; if the problem persists check the token and configuration.",
    )
