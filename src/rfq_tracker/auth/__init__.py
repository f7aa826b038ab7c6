"""Authentication for Microsoft Graph (MSAL device code flow).

Usage:
    from rfq_tracker.auth import GraphAuth

    auth = GraphAuth(client_id, tenant_id, scopes, token_cache_path)
    token = auth.get_access_token()
"""

from rfq_tracker.auth.msal_auth import GraphAuth

__all__ = ["GraphAuth"]
