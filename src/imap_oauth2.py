"""
IMAP OAuth2 Authentication

Picks the OAuth2 provider from the IMAP host and obtains an XOAUTH2 access
token through the provider module (oauth2_microsoft, oauth2_google).
"""

import logging
import sys

import oauth2_google
import oauth2_microsoft

PROVIDER_MICROSOFT = "microsoft"
PROVIDER_GOOGLE = "google"

_PROVIDER_HINTS = {
    PROVIDER_MICROSOFT: ("outlook", "office365", "microsoft"),
    PROVIDER_GOOGLE: ("gmail", "google"),
}

logger = logging.getLogger(__name__)


def detect_oauth2_provider(host):
    """
    Detects the OAuth2 provider from the IMAP host.
    Returns "microsoft", "google", or None if unrecognized.
    """
    host_lower = host.lower()
    for provider, hints in _PROVIDER_HINTS.items():
        if any(hint in host_lower for hint in hints):
            return provider
    return None


def acquire_oauth2_token_for_provider(provider, client_id, email, client_secret=None):
    """
    Acquires an OAuth2 token for the specified provider.

    Args:
        provider: "microsoft" or "google"
        client_id: OAuth2 client ID
        email: User's email address (used for Microsoft tenant discovery)
        client_secret: Required for Google, not needed for Microsoft

    Returns:
        The access token, or None on failure.
    """
    if provider == PROVIDER_MICROSOFT:
        return oauth2_microsoft.acquire_token(client_id, email)
    if provider == PROVIDER_GOOGLE:
        if not client_secret:
            logger.error(
                "OAuth2 client secret is required for Google. "
                "Provide --src-client-secret or set SRC_OAUTH2_CLIENT_SECRET."
            )
            return None
        return oauth2_google.acquire_token(client_id, client_secret)
    logger.error("Unknown OAuth2 provider: %s", provider)
    return None


def acquire_token(host, client_id, email, client_secret=None):
    """
    Detect the OAuth2 provider from the host and acquire a token.

    Exits the process with status 1 when the provider is unknown or no token
    could be obtained; there is nothing to back up without a login.

    Returns:
        (token, provider) tuple on success.
    """
    provider = detect_oauth2_provider(host)
    if not provider:
        logger.error("Could not detect OAuth2 provider from host '%s'.", host)
        sys.exit(1)

    logger.info("Acquiring OAuth2 token (%s)...", provider)
    token = acquire_oauth2_token_for_provider(provider, client_id, email, client_secret)
    if not token:
        logger.error("Failed to acquire OAuth2 token.")
        sys.exit(1)

    logger.info("OAuth2 token acquired successfully.")
    return token, provider


def auth_description(provider):
    """Human-readable auth method for the configuration summary."""
    if provider:
        return f"OAuth2/{provider} (XOAUTH2)"
    return "Basic (password)"
