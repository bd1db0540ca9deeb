"""
Error taxonomy for the sync engine.

Every failure that crosses a component boundary is one of these. The retry
policy decides what to do by class, never by parsing messages:

    AuthenticationFailed   bad credentials; fatal, never retried
    LoginLimitReached      Acumatica's concurrent API login ceiling; reported
                           with remediation text, never retried automatically
    TransientRemoteError   timeouts, 5xx, proxy pages served instead of JSON;
                           retried with backoff
    RemoteTimeout          a request timed out again on a fresh session;
                           not retried further, ends the running job
    SessionRejected        401/403 that survived one forced re-login
    RecordNotFound         the remote no longer knows an identity; recorded
    PersistenceError       a local write failed; aborts one record only
"""

LOGIN_LIMIT_GUIDANCE = (
    "Go to Acumatica System Monitor (SM201010) > Active Users and terminate "
    "stale API sessions, or run `python -m acusync logout` to release the "
    "sessions cached by this service."
)


class SyncError(Exception):
    """Base class for every engine error."""

    #: short machine-readable code surfaced in API responses
    code = "sync_error"


class AuthenticationFailed(SyncError):
    code = "authentication_failed"


class LoginLimitReached(SyncError):
    code = "login_limit_reached"

    def __init__(self, detail: str = ""):
        message = "Acumatica API login limit reached"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.detail = detail
        self.guidance = LOGIN_LIMIT_GUIDANCE


class TransientRemoteError(SyncError):
    code = "transient_remote_error"

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class RemoteTimeout(TransientRemoteError):
    """A request hit the per-request timeout twice (once on a fresh session)."""

    code = "remote_timeout"


class SessionRejected(SyncError):
    code = "session_rejected"

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class RecordNotFound(SyncError):
    code = "record_not_found"

    def __init__(self, kind: str, reference_number: str):
        super().__init__(f"{kind} {reference_number} not found in Acumatica")
        self.kind = kind
        self.reference_number = reference_number


class RemoteRequestError(SyncError):
    """Non-retryable remote failure (4xx other than auth and not-found)."""

    code = "remote_request_error"

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(SyncError):
    code = "persistence_error"


#: errors that end a running job instead of being recorded against one record
JOB_FATAL_ERRORS = (
    AuthenticationFailed,
    LoginLimitReached,
    SessionRejected,
    RemoteTimeout,
)
