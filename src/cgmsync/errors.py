"""
Sync error hierarchy.

Every error that can end a sync run before any writes carries the HTTP
status the trigger endpoint should answer with. Item-level and
phase-level vendor failures are not exceptions at this level: they are
collected into SyncResult.errors.
"""
from fastapi import status
from fastapi.responses import JSONResponse


class SyncError(RuntimeError):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    needs_reauth: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> JSONResponse:
        content = {"success": False, "error": self.message}
        if self.needs_reauth:
            content["needsReauth"] = True
        return JSONResponse(status_code=self.status_code, content=content)


# ── Credential preconditions (no writes, no audit row) ───────────────────────

class PreconditionError(SyncError):
    status_code = status.HTTP_400_BAD_REQUEST
    needs_reauth = True


class NoActiveCredentialError(PreconditionError):
    def __init__(self, user_id: str):
        super().__init__(
            "No active Dexcom connection found. Please connect your Dexcom account."
        )
        self.user_id = user_id


class CredentialExpiredError(PreconditionError):
    def __init__(self, user_id: str):
        super().__init__("Dexcom tokens have expired. Please reconnect your account.")
        self.user_id = user_id


class InvalidCredentialError(PreconditionError):
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, user_id: str, vendor_status: int):
        super().__init__(
            f"Dexcom rejected the stored credential (HTTP {vendor_status}). "
            "Please reconnect your account."
        )
        self.user_id = user_id
        self.vendor_status = vendor_status


class VendorUnavailableError(PreconditionError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    needs_reauth = False

    def __init__(self, user_id: str, detail: str):
        super().__init__(f"Dexcom API is unreachable: {detail}")
        self.user_id = user_id


# ── Caller authentication / authorization ────────────────────────────────────

class CallerAuthError(SyncError):
    status_code = status.HTTP_401_UNAUTHORIZED


class AuthorizationError(SyncError):
    status_code = status.HTTP_403_FORBIDDEN


# ── Concurrency ──────────────────────────────────────────────────────────────

class SyncInProgressError(SyncError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, user_id: str):
        super().__init__("A sync is already running for this user. Try again shortly.")
        self.user_id = user_id
