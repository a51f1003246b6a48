"""
Microsoft OAuth2 Token Acquisition

Device code flow through MSAL for Outlook / Microsoft 365 IMAP. The tenant
is discovered from the mailbox's email domain via the public OpenID
configuration document.
"""

import http.client
import json
import logging
import os
import re
import ssl
import urllib.parse

import msal

DEFAULT_DISCOVERY_HOST = "login.microsoftonline.com"
DEFAULT_AUTHORITY_BASE = "https://login.microsoftonline.com"
IMAP_SCOPES = ["https://outlook.office365.com/IMAP.AccessAsUser.All"]

_TENANT_PATTERN = re.compile(r"/([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})")

# Module-level caches
_msal_app_cache = {}  # (client_id, tenant_id) -> PublicClientApplication
_tenant_cache = {}  # domain -> tenant_id

logger = logging.getLogger(__name__)


def _fetch_json_https(host, path, timeout=10):
    """GET a JSON document. ``host`` may be a bare host or an http(s) base URL."""
    if not host or any(ch in host for ch in "\r\n"):
        raise ValueError("Invalid host")
    if not path.startswith("/"):
        path = f"/{path}"

    use_https = True
    if host.startswith(("http://", "https://")):
        parsed = urllib.parse.urlparse(host)
        if not parsed.hostname:
            raise ValueError("Invalid host")
        use_https = parsed.scheme == "https"
        host = f"{parsed.hostname}:{parsed.port}" if parsed.port else parsed.hostname
        path = f"{parsed.path.rstrip('/')}{path}"

    if use_https:
        conn = http.client.HTTPSConnection(host, timeout=timeout, context=ssl.create_default_context())
    else:
        conn = http.client.HTTPConnection(host, timeout=timeout)
    try:
        conn.request("GET", path, headers={"Accept": "application/json"})
        response = conn.getresponse()
        body = response.read()
    finally:
        conn.close()

    if response.status != 200:
        raise RuntimeError(f"Unexpected HTTP status {response.status}")
    return json.loads(body.decode("utf-8"))


def discover_tenant(email):
    """
    Looks up the tenant ID for the email's domain. Cached per domain.
    Returns the tenant ID string or None if discovery fails.
    """
    domain = email.split("@")[-1].strip().lower()
    if not domain:
        logger.error("Could not discover Microsoft tenant: missing email domain")
        return None

    if domain in _tenant_cache:
        return _tenant_cache[domain]

    path = f"/{urllib.parse.quote(domain, safe='.-')}/.well-known/openid-configuration"
    discovery_host = os.getenv("OAUTH2_MICROSOFT_DISCOVERY_URL") or DEFAULT_DISCOVERY_HOST
    try:
        document = _fetch_json_https(discovery_host, path)
    except (OSError, http.client.HTTPException, RuntimeError, ValueError) as e:
        logger.error("Could not discover Microsoft tenant for domain '%s': %s", domain, e)
        return None

    issuer = document.get("issuer", "")
    match = _TENANT_PATTERN.search(issuer)
    if not match:
        logger.error("Could not extract tenant ID from issuer: %s", issuer)
        return None

    _tenant_cache[domain] = match.group(1)
    return match.group(1)


def _get_app(client_id, tenant_id):
    cache_key = (client_id, tenant_id)
    app = _msal_app_cache.get(cache_key)
    if app is None:
        authority_base = os.getenv("OAUTH2_MICROSOFT_AUTHORITY_BASE_URL") or DEFAULT_AUTHORITY_BASE
        logger.info("Discovered Microsoft tenant: %s", tenant_id)
        app = msal.PublicClientApplication(client_id, authority=f"{authority_base.rstrip('/')}/{tenant_id}")
        _msal_app_cache[cache_key] = app
    return app


def acquire_token(client_id, email):
    """
    Returns an access token for IMAP, or None.

    A cached MSAL app is tried silently first; otherwise the device code
    flow prints its sign-in instructions and blocks until the user completes it.
    """
    tenant_id = discover_tenant(email)
    if not tenant_id:
        return None

    app = _get_app(client_id, tenant_id)

    accounts = app.get_accounts()
    if accounts:
        result = app.acquire_token_silent(IMAP_SCOPES, account=accounts[0])
        if result and "access_token" in result:
            return result["access_token"]

    flow = app.initiate_device_flow(scopes=IMAP_SCOPES)
    if "user_code" not in flow:
        logger.error("Could not initiate device flow: %s", flow.get("error_description", "Unknown error"))
        return None

    # Sign-in instructions go to the terminal regardless of log level
    print(flow["message"])
    result = app.acquire_token_by_device_flow(flow)
    if "access_token" in result:
        return result["access_token"]

    logger.error("Could not acquire token: %s", result.get("error_description", "Unknown error"))
    return None
