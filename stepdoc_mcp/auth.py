import asyncio
import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog

from .config import Settings
from .errors import ApiError, NoRefreshToken, RefreshFailed, SessionError, SessionExpired
from .http_client import HttpClient
from .session import TokenPair, TokenStore

logger = structlog.get_logger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class SessionResult:
    """Outcome of a public session operation; failures carry a reason name."""

    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    user: Optional[Dict[str, Any]] = None

    @classmethod
    def from_pair(cls, pair: TokenPair, **extra: Any) -> "SessionResult":
        return cls(success=True, access_token=pair.access_token, refresh_token=pair.refresh_token, **extra)

    @classmethod
    def from_error(cls, exc: SessionError) -> "SessionResult":
        return cls(success=False, reason=exc.reason, message=exc.message)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        if self.access_token is not None:
            out["accessToken"] = self.access_token
        if self.refresh_token is not None:
            out["refreshToken"] = self.refresh_token
        if self.reason is not None:
            out["reason"] = self.reason
        if self.message is not None:
            out["message"] = self.message
        if self.user is not None:
            out["user"] = self.user
        return out


def _pair_from_payload(payload: Any) -> TokenPair:
    """Pull the token pair out of a ``{success, data: {...}}`` envelope."""
    if not isinstance(payload, dict):
        raise ValueError("response body is not a JSON object")
    if not payload.get("success"):
        raise ValueError(payload.get("message") or "request was not successful")
    data = payload.get("data")
    if not isinstance(data, dict):
        raise ValueError("response is missing data")
    access_token = data.get("accessToken")
    refresh_token = data.get("refreshToken")
    if not isinstance(access_token, str) or not isinstance(refresh_token, str) or not access_token or not refresh_token:
        raise ValueError("response is missing accessToken/refreshToken")
    return TokenPair(access_token=access_token, refresh_token=refresh_token)


class SessionRefreshManager:
    """Keeps a valid access token available for authenticated StepDoc calls.

    Holds at most one armed refresh timer and at most one in-flight refresh;
    concurrent ``refresh_access_token`` callers share the in-flight result.
    This is the only writer of the token keys in the store.
    """

    def __init__(self, client: HttpClient, store: TokenStore, settings: Settings):
        self.client = client
        self.store = store
        self.settings = settings
        self._timer: Optional[asyncio.TimerHandle] = None
        self._refresh_task: Optional["asyncio.Future[SessionResult]"] = None
        self._timer_task: Optional["asyncio.Task[SessionResult]"] = None
        # Bumped whenever the stored session is replaced or destroyed.
        self._generation = 0

    # ---------------- State ----------------
    @property
    def state(self) -> SessionState:
        if self._refresh_task is not None:
            return SessionState.REFRESHING
        if self._timer is not None:
            return SessionState.SCHEDULED
        return SessionState.IDLE

    @property
    def refresh_scheduled(self) -> bool:
        return self._timer is not None

    def status(self) -> Dict[str, Any]:
        pair = self.store.load()
        expires_at = pair.access_expires_at if pair else None
        return {
            "state": self.state.value,
            "authenticated": pair is not None,
            "refreshScheduled": self.refresh_scheduled,
            "accessExpiresAt": expires_at.isoformat() if expires_at else None,
        }

    # ---------------- Scheduling ----------------
    def schedule_refresh(self) -> None:
        """Arm the one-shot refresh timer, replacing any armed one."""
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.settings.refresh_interval_seconds, self._on_timer)
        logger.debug("refresh_scheduled", delay_seconds=self.settings.refresh_interval_seconds)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._timer_task = asyncio.ensure_future(self._timed_refresh())

    async def _timed_refresh(self) -> SessionResult:
        result = await self.refresh_access_token()
        if not result.success:
            logger.warning("scheduled_refresh_failed", reason=result.reason, message=result.message)
        return result

    def initialize_token_management(self) -> bool:
        """Arm the refresh timer when a full token pair is already stored."""
        if self.store.load() is None:
            logger.debug("token_management_idle")
            return False
        self.schedule_refresh()
        return True

    async def start(self) -> bool:
        """Startup step: wait for the API, then resume any stored session."""
        await self.client.wait_until_ready(
            timeout=self.settings.ready_timeout_seconds,
            poll_interval=self.settings.ready_poll_seconds,
        )
        return self.initialize_token_management()

    # ---------------- Refresh ----------------
    async def refresh_access_token(self) -> SessionResult:
        """Refresh the token pair, joining a refresh already in flight."""
        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._run_refresh())
        else:
            logger.debug("refresh_coalesced")
        # Shielded so one caller being cancelled does not cancel the shared refresh.
        return await asyncio.shield(self._refresh_task)

    async def _run_refresh(self) -> SessionResult:
        try:
            pair = await self._perform_token_refresh()
            return SessionResult.from_pair(pair)
        except SessionError as exc:
            return SessionResult.from_error(exc)
        finally:
            self._refresh_task = None

    async def _perform_token_refresh(self) -> TokenPair:
        refresh_token = self.store.refresh_token()
        if not refresh_token:
            self._cancel_timer()
            self.store.clear()
            logger.info("refresh_skipped_no_token")
            raise NoRefreshToken()

        generation = self._generation
        try:
            payload = await self.client.request(
                "POST",
                "api/auth/refresh",
                json_body={"refreshToken": refresh_token},
                csrf=True,
            )
            pair = _pair_from_payload(payload)
        except (ApiError, httpx.HTTPError, ValueError) as exc:
            message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
            if generation != self._generation:
                # The store now belongs to a newer session (or none); leave it alone.
                logger.info("stale_refresh_failed", error=message)
                raise RefreshFailed(message) from exc
            self._cancel_timer()
            self.store.clear()
            logger.warning("refresh_failed", error=message)
            raise RefreshFailed(message) from exc

        if generation != self._generation:
            logger.info("stale_refresh_discarded")
            raise RefreshFailed("Session changed while refreshing; refreshed tokens discarded.")

        self.store.save(pair)
        self.schedule_refresh()
        logger.info("refresh_succeeded")
        return pair

    # ---------------- Authenticated requests ----------------
    async def make_authenticated_request(
        self,
        path: str,
        method: str = "GET",
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Send a request with the stored bearer token.

        On a 401 the session is refreshed once and the request retried once;
        the retried response is returned whatever its status. Raises
        SessionExpired when the refresh fails.
        """

        async def _send(token: Optional[str]) -> httpx.Response:
            return await self.client.send(
                method,
                path,
                access_token=token,
                params=params,
                json_body=json_body,
                headers=headers,
            )

        response = await _send(self.store.access_token())
        if response.status_code != 401:
            return response

        logger.info("request_unauthorized", path=path)
        result = await self.refresh_access_token()
        if not result.success:
            raise SessionExpired(
                result.message or "Session expired; please sign in again.",
                redirect_to=self.settings.login_url,
            )

        retried = await _send(result.access_token)
        if retried.status_code == 401:
            logger.warning("request_unauthorized_after_refresh", path=path)
        return retried

    # ---------------- Sign in / out ----------------
    async def _establish_session(
        self, path: str, body: Dict[str, Any], reason: str, default_message: str
    ) -> SessionResult:
        try:
            payload = await self.client.request("POST", path, json_body=body, csrf=True)
            pair = _pair_from_payload(payload)
        except (ApiError, httpx.HTTPError, ValueError) as exc:
            message = getattr(exc, "message", None) or str(exc) or default_message
            logger.info("session_not_established", path=path, error=message)
            return SessionResult(success=False, reason=reason, message=message)

        # Invalidates any refresh still in flight for the previous session.
        self._generation += 1
        self.store.save(pair)
        self.schedule_refresh()
        logger.info("session_established", path=path)
        user = payload["data"].get("user")
        return SessionResult.from_pair(
            pair,
            message=payload.get("message") or default_message,
            user=user if isinstance(user, dict) else None,
        )

    async def sign_in(self, email: str, password: str) -> SessionResult:
        """Authenticate with email/password and store the issued token pair."""
        return await self._establish_session(
            "api/auth/local/login",
            {"email": email, "password": password},
            "SignInFailed",
            "Login successful",
        )

    async def register(self, email: str, password: str, name: Optional[str] = None) -> SessionResult:
        """Create an account; the backend signs the new user in straight away."""
        body: Dict[str, Any] = {"email": email, "password": password}
        if name:
            body["name"] = name
        return await self._establish_session(
            "api/auth/local/register",
            body,
            "SignUpFailed",
            "User registered successfully",
        )

    async def _post_simple(self, path: str, body: Dict[str, Any], reason: str, **kwargs: Any) -> SessionResult:
        try:
            payload = await self.client.request("POST", path, json_body=body, csrf=True, **kwargs)
        except (ApiError, httpx.HTTPError, ValueError) as exc:
            message = getattr(exc, "message", None) or str(exc) or reason
            logger.info("request_rejected", path=path, error=message)
            return SessionResult(success=False, reason=reason, message=message)
        message = payload.get("message") if isinstance(payload, dict) else None
        if isinstance(payload, dict) and payload.get("success") is False:
            return SessionResult(success=False, reason=reason, message=message)
        return SessionResult(success=True, message=message)

    async def request_password_reset(self, email: str) -> SessionResult:
        """Ask the backend to email a password reset link."""
        return await self._post_simple("api/auth/reset-password", {"email": email}, "PasswordResetFailed")

    async def update_password(self, password: str) -> SessionResult:
        """Set a new password for the signed-in user."""
        access_token = self.store.access_token()
        if not access_token:
            return SessionResult(
                success=False,
                reason="NotAuthenticated",
                message="No access token stored; please sign in again.",
            )
        return await self._post_simple(
            "api/auth/update-password",
            {"password": password, "accessToken": access_token},
            "PasswordUpdateFailed",
            access_token=access_token,
        )

    async def sign_out(self) -> SessionResult:
        """Revoke tokens server-side when possible; always clears them locally."""
        body = {
            key: value
            for key, value in (
                ("accessToken", self.store.access_token()),
                ("refreshToken", self.store.refresh_token()),
            )
            if value
        }
        if body:
            try:
                response = await self.client.send("POST", "api/auth/logout", json_body=body, csrf=True)
                if not response.is_success:
                    logger.warning("logout_request_rejected", status=response.status_code)
            except (ApiError, httpx.HTTPError) as exc:
                logger.warning("logout_request_failed", error=str(exc))

        # Invalidates any refresh still in flight.
        self._generation += 1
        self._cancel_timer()
        self.store.clear()
        logger.info("signed_out")
        return SessionResult(success=True, message="Logged out successfully")

    async def close(self) -> None:
        self._cancel_timer()
        task, self._timer_task = self._timer_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
