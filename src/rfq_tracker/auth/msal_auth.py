"""MSAL device code flow authentication for Microsoft Graph.

The tracker reads supplier replies and sends RFQ drafts from the user's own
mailbox, so it authenticates as that user with the device code flow: the user
visits a URL on any device and enters a short code.

- Token cache persisted to disk with mode 600
- Silent acquisition (cache or refresh token) tried first
- Transient network errors retried with exponential backoff and jitter

Usage:
    from rfq_tracker.auth.msal_auth import GraphAuth

    auth = GraphAuth(
        client_id=config.auth.client_id,
        tenant_id=config.auth.tenant_id,
        scopes=config.auth.scopes,
        token_cache_path=config.auth.token_cache_path,
    )
    token = auth.get_access_token()
"""

import os
import random
import stat
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import msal
import requests
from rich.console import Console
from rich.panel import Panel

from rfq_tracker.core.errors import AuthenticationError
from rfq_tracker.core.logging import get_logger

logger = get_logger(__name__)
console = Console()

MSAL_MAX_RETRIES = 3
MSAL_RETRY_DELAYS = [1.0, 2.0, 4.0]


class GraphAuth:
    """Acquires Microsoft Graph access tokens for the signed-in user.

    Attributes:
        client_id: Azure AD Application (client) ID
        tenant_id: Azure AD Directory (tenant) ID or 'common'
        scopes: Microsoft Graph permission scopes (Mail.Send is needed for batches)
        token_cache_path: Path to the token cache file
    """

    def __init__(
        self,
        client_id: str,
        tenant_id: str,
        scopes: list[str],
        token_cache_path: str,
    ):
        """Initialize the authentication handler.

        Raises:
            ValueError: If client_id is empty
        """
        if not client_id or not client_id.strip():
            raise ValueError(
                "client_id is required. "
                "Register an app in Azure Portal: https://portal.azure.com → "
                "Microsoft Entra ID → App registrations → New registration"
            )

        self.client_id = client_id
        self.tenant_id = tenant_id
        self.scopes = scopes
        self.token_cache_path = Path(token_cache_path)
        self.cache = msal.SerializableTokenCache()
        self._load_cache()

        self.app = msal.PublicClientApplication(
            client_id=self.client_id,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
            token_cache=self.cache,
        )

        logger.debug(
            "graph_auth_initialized",
            client_id=client_id[:8] + "...",
            tenant_id=tenant_id[:8] + "...",
            scopes=scopes,
        )

    def get_access_token(self) -> str:
        """Get a valid access token, refreshing or re-authenticating as needed.

        Tries silent acquisition from the cache first, then falls back to the
        interactive device code flow.

        Raises:
            AuthenticationError: If authentication fails
        """
        accounts = self.app.get_accounts()
        if accounts:
            try:
                result = self._with_retry(
                    "silent_token",
                    lambda: self.app.acquire_token_silent(scopes=self.scopes, account=accounts[0]),
                )
            except requests.exceptions.RequestException as e:
                logger.error("silent_token_failed", error=str(e))
                result = None

            if result and "access_token" in result:
                self._save_cache()
                return result["access_token"]
            if result:
                logger.debug(
                    "silent_token_unavailable",
                    error=result.get("error"),
                    description=result.get("error_description"),
                )

        logger.info("device_code_flow_started")
        return self._device_code_flow()

    def get_username(self) -> str | None:
        """Return the signed-in account's username, if a cached account exists."""
        accounts = self.app.get_accounts()
        if not accounts:
            return None
        return accounts[0].get("username")

    def _with_retry(self, operation: str, call: Callable[[], Any]) -> Any:
        """Run an MSAL call, retrying transient network errors with jittered backoff.

        Raises:
            requests.exceptions.RequestException: If every attempt fails
        """
        for attempt in range(MSAL_MAX_RETRIES):
            try:
                return call()
            except requests.exceptions.RequestException as e:
                if attempt == MSAL_MAX_RETRIES - 1:
                    raise
                delay = MSAL_RETRY_DELAYS[attempt]
                actual_delay = delay + delay * 0.2 * (2 * random.random() - 1)
                logger.warning(
                    "msal_call_retrying",
                    operation=operation,
                    attempt=attempt + 1,
                    max_retries=MSAL_MAX_RETRIES,
                    delay=actual_delay,
                    error=str(e),
                )
                time.sleep(actual_delay)
        raise AssertionError("unreachable")

    def _device_code_flow(self) -> str:
        """Run the interactive device code flow.

        Raises:
            AuthenticationError: If the flow cannot start or the user does not finish it
        """
        try:
            flow = self._with_retry(
                "initiate_device_flow",
                lambda: self.app.initiate_device_flow(scopes=self.scopes),
            )
        except requests.exceptions.RequestException as e:
            raise AuthenticationError(
                f"Failed to initiate device code flow after {MSAL_MAX_RETRIES} attempts: {e}. "
                "Check your network connection and try again."
            ) from e

        if "user_code" not in flow:
            error_msg = flow.get("error_description", "Unknown error during flow initiation")
            raise AuthenticationError(
                f"Failed to initiate device code flow: {error_msg}. "
                "Check that 'Allow public client flows' is enabled in Azure Portal: "
                "App registrations → Your app → Authentication → Advanced settings"
            )

        self._display_auth_prompt(flow["verification_uri"], flow["user_code"])

        try:
            result = self._with_retry(
                "device_flow_token",
                lambda: self.app.acquire_token_by_device_flow(flow),
            )
        except requests.exceptions.RequestException as e:
            raise AuthenticationError(f"Authentication failed: network error: {e}") from e

        if "access_token" not in result:
            error = result.get("error", "unknown_error")
            error_desc = result.get("error_description", "Authentication failed")
            logger.error("device_code_flow_failed", error=error, description=error_desc)

            if error == "authorization_pending":
                raise AuthenticationError(
                    "Authentication timed out. Please try again and complete the "
                    "sign-in process within the time limit."
                )
            if error == "authorization_declined":
                raise AuthenticationError(
                    "Authentication was declined. Please try again and accept "
                    "the permission request."
                )
            raise AuthenticationError(f"Authentication failed: {error_desc}")

        self._save_cache()
        logger.info(
            "authentication_succeeded",
            username=result.get("id_token_claims", {}).get("preferred_username", "unknown"),
        )
        return result["access_token"]

    def _display_auth_prompt(self, verification_uri: str, user_code: str) -> None:
        console.print()
        console.print(
            Panel(
                f"To authenticate, open a browser and go to:\n\n"
                f"  [bold blue]{verification_uri}[/bold blue]\n\n"
                f"Enter this code: [bold green]{user_code}[/bold green]\n\n"
                f"Waiting for authentication...",
                title="Microsoft Authentication Required",
                border_style="bright_blue",
            )
        )
        console.print()

    def _load_cache(self) -> None:
        """Load the token cache from disk if it exists."""
        if not self.token_cache_path.exists():
            return
        try:
            self.cache.deserialize(self.token_cache_path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(
                "token_cache_load_failed",
                path=str(self.token_cache_path),
                error=str(e),
            )

    def _save_cache(self) -> None:
        """Save the token cache to disk, readable by the owner only."""
        if not self.cache.has_state_changed:
            return

        try:
            self.token_cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.token_cache_path.write_text(self.cache.serialize())
            os.chmod(self.token_cache_path, stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            # Not fatal: the token is re-acquired next run
            logger.error(
                "token_cache_save_failed",
                path=str(self.token_cache_path),
                error=str(e),
            )
