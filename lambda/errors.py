from typing import Any, Dict, Optional


class HTTPError(Exception):
    status_code = 500

    def __init__(
        self,
        status_code: Optional[int] = None,
        message: str = "request failed",
        details: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        self.message = message
        self.details = details
        self.headers = headers or {}

    def to_body(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class Unauthenticated(HTTPError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message=message)


class BadRequest(HTTPError):
    status_code = 400

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message=message, details=details)


class NoValidPlaylists(BadRequest):
    def __init__(self) -> None:
        super().__init__("No valid playlists found")


class AlreadyPublished(BadRequest):
    def __init__(self, playlist_id: Optional[str] = None) -> None:
        super().__init__(
            "Playlist already saved to Spotify",
            {"playlistId": playlist_id} if playlist_id else None,
        )


class UserNotFound(HTTPError):
    status_code = 404

    def __init__(self, user_id: str) -> None:
        super().__init__(message="User not found")
        self.user_id = user_id


class GenerationNotFound(HTTPError):
    status_code = 404

    def __init__(self) -> None:
        super().__init__(message="Generated playlist not found")


class NoRefreshToken(HTTPError):
    """The stored credential cannot be refreshed; the user must sign in again."""

    status_code = 502

    def __init__(self, user_id: str) -> None:
        super().__init__(
            message="No Spotify refresh token on record",
            details={"reason": "no_refresh_token"},
        )
        self.user_id = user_id


class RefreshFailed(HTTPError):
    status_code = 502

    def __init__(self, status: Optional[int] = None, error_code: Optional[str] = None) -> None:
        super().__init__(
            message="Failed to refresh Spotify token",
            details={"reason": "refresh_failed", "status": status, "error": error_code},
        )
        self.upstream_status = status
        self.error_code = error_code


class UpstreamRequestFailed(HTTPError):
    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(
            message=message,
            details={"reason": "upstream_request_failed", "status": status},
        )
        self.upstream_status = status


class InvalidModelOutput(HTTPError):
    """The model answered with text that could not be read as a JSON object."""

    status_code = 502

    def __init__(self, raw_text: str) -> None:
        super().__init__(
            message="Model returned invalid JSON",
            details={"reason": "invalid_model_output", "raw": raw_text[:500]},
        )
        self.raw_text = raw_text
