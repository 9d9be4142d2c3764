from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP

from .auth import SessionRefreshManager, SessionResult
from .errors import ApiError, SessionExpired
from .http_client import HttpClient


def register_tools(mcp: FastMCP, client: HttpClient, manager: SessionRefreshManager) -> None:
    """Register all StepDoc tools with FastMCP."""

    async def _call(
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Internal helper that sends an authenticated request through the session manager
        (one refresh + retry on 401) and decodes the JSON body.
        An expired session is reported as data so the client can prompt a new login.
        """
        try:
            response = await manager.make_authenticated_request(
                path,
                method,
                params=params,
                json_body=json_body,
            )
        except SessionExpired as exc:
            return {"status": "expired", "message": exc.message, "redirectTo": exc.redirect_to}
        if not response.is_success:
            raise ApiError(response.status_code, HttpClient.error_message(response))
        return response.json()

    def _session_payload(result: SessionResult) -> Dict[str, Any]:
        """Login/register outcome without the tokens themselves."""
        out: Dict[str, Any] = {"success": result.success, "message": result.message}
        if not result.success:
            out["reason"] = result.reason
            return out
        out["user"] = result.user
        out["accessExpiresAt"] = manager.status()["accessExpiresAt"]
        return out

    # ---------------- Public ----------------
    @mcp.tool()
    async def health_check() -> Dict[str, Any]:
        """
        Purpose: Liveness check confirming the MCP server can reach the StepDoc API.
        Outputs: dict with the API's status and message.
        Behavior: Unauthenticated GET /api/health.
        """
        return await client.request("GET", "api/health")

    # ---------------- Session ----------------
    @mcp.tool(name="login")
    async def login(email: str, password: str) -> Dict[str, Any]:
        """
        Purpose: Sign in with email/password.
        Inputs:
        - email (str)
        - password (str): sent only to the API, never stored or echoed.
        Outputs: success flag, message, user profile and access token expiry. Tokens are not returned.
        Behavior: POST /api/auth/local/login; stores the token pair and schedules background refresh.
        """
        return _session_payload(await manager.sign_in(email, password))

    @mcp.tool()
    async def register(email: str, password: str, name: Optional[str] = None) -> Dict[str, Any]:
        """
        Purpose: Create a StepDoc account and sign in as the new user.
        Inputs:
        - email (str)
        - password (str): at least 8 characters with upper, lower, digit and symbol (checked by the API).
        - name (str|None): display name; the API defaults it to the email's local part.
        Outputs: same shape as `login`.
        Behavior: POST /api/auth/local/register; stores the token pair and schedules background refresh.
        """
        return _session_payload(await manager.register(email, password, name))

    @mcp.tool()
    async def request_password_reset(email: str) -> Dict[str, Any]:
        """
        Purpose: Send a password reset link to an email address.
        Behavior: POST /api/auth/reset-password; the API answers the same whether or not the account exists.
        """
        result = await manager.request_password_reset(email)
        return result.to_dict()

    @mcp.tool()
    async def update_password(password: str) -> Dict[str, Any]:
        """
        Purpose: Change the signed-in user's password.
        Inputs:
        - password (str): the new password; never stored or echoed.
        Behavior: POST /api/auth/update-password with the stored access token.
        """
        result = await manager.update_password(password)
        return result.to_dict()

    @mcp.tool()
    async def logout() -> Dict[str, Any]:
        """
        Purpose: Sign out of the current session.
        Behavior: Best-effort POST /api/auth/logout to revoke tokens; local tokens are cleared regardless.
        """
        result = await manager.sign_out()
        return {"success": result.success, "message": result.message}

    @mcp.tool()
    async def refresh_session() -> Dict[str, Any]:
        """
        Purpose: Force a token refresh now.
        Outputs: success flag, and on failure the reason (NoRefreshToken or RefreshFailed) and message.
        Behavior: Joins a refresh already in flight; on failure the stored tokens are cleared.
        """
        result = await manager.refresh_access_token()
        if result.success:
            return {"success": True, **manager.status()}
        return {"success": False, "reason": result.reason, "message": result.message}

    @mcp.tool()
    async def session_status() -> Dict[str, Any]:
        """
        Purpose: Report whether a session is stored and when its access token expires.
        Outputs: state (idle/scheduled/refreshing), authenticated, refreshScheduled, accessExpiresAt.
        """
        return manager.status()

    # ---------------- Authenticated ----------------
    @mcp.tool()
    async def auth_me() -> Dict[str, Any]:
        """
        Purpose: Fetch the profile of the signed-in user.
        Behavior: GET /api/auth/user with the stored bearer token; refreshes once on 401.
        """
        return await _call("GET", "api/auth/user")

    @mcp.tool()
    async def verify_token(access_token: Optional[str] = None) -> Dict[str, Any]:
        """
        Purpose: Ask the API whether an access token is valid.
        Inputs:
        - access_token (str|None): token to check; defaults to the stored one.
        Behavior: POST /api/auth/verify.
        """
        token = access_token or manager.store.access_token()
        if not token:
            return {"success": False, "message": "No access token stored; please login first."}
        try:
            return await client.request("POST", "api/auth/verify", json_body={"accessToken": token})
        except ApiError as exc:
            if exc.status_code == 401:
                return {"success": False, "message": exc.message}
            raise

    @mcp.tool()
    async def subscription_status() -> Dict[str, Any]:
        """
        Purpose: Read the signed-in user's subscription state.
        Behavior: POST /api/subscription/status with the stored bearer token; refreshes once on 401.
        """
        return await _call("POST", "api/subscription/status", json_body={})
