"""
Google OAuth2 Token Acquisition

Installed-app flow for Gmail / Google Workspace IMAP: opens a browser for
consent and receives the redirect on a local HTTP listener.
"""

import logging
import os

import google.auth.exceptions
import google.auth.transport.requests
from google_auth_oauthlib.flow import InstalledAppFlow

DEFAULT_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
IMAP_SCOPES = ["https://mail.google.com/"]

# Module-level cache for credentials (holds refresh token)
_creds_cache = {}  # (client_id, client_secret) -> credentials

logger = logging.getLogger(__name__)


def _client_config(client_id, client_secret):
    return {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": os.getenv("OAUTH2_GOOGLE_AUTH_URL") or DEFAULT_AUTH_URI,
            "token_uri": os.getenv("OAUTH2_GOOGLE_TOKEN_URL") or DEFAULT_TOKEN_URI,
            "redirect_uris": ["http://localhost"],
        }
    }


def _refresh_cached(cache_key):
    creds = _creds_cache.get(cache_key)
    if not creds or not creds.refresh_token:
        return None
    try:
        creds.refresh(google.auth.transport.requests.Request())
    except google.auth.exceptions.GoogleAuthError as e:
        logger.debug("Cached Google credentials could not be refreshed: %s", e)
        return None
    return creds.token


def acquire_token(client_id, client_secret):
    """
    Returns a Google access token for IMAP, or None.

    Cached credentials are refreshed silently when possible; otherwise the
    browser consent flow runs.
    """
    cache_key = (client_id, client_secret)
    token = _refresh_cached(cache_key)
    if token:
        return token

    flow = InstalledAppFlow.from_client_config(_client_config(client_id, client_secret), scopes=IMAP_SCOPES)

    logger.info("Opening browser for Google authentication...")
    logger.info("If the browser does not open, check the terminal for a URL to visit.")
    credentials = flow.run_local_server(port=0)

    if credentials and credentials.token:
        _creds_cache[cache_key] = credentials
        return credentials.token

    logger.error("Could not acquire Google OAuth2 token.")
    return None
