"""
IMAP Common Utilities

Shared functionality for the IMAP archive backup: connection setup,
LIST response parsing, folder quoting, and the human-readable formatting
used in progress labels and log lines.
"""

from __future__ import annotations

import imaplib
import logging
import re
import ssl
import urllib.parse

import humanize

# IMAP Folder Constants
FOLDER_INBOX = "INBOX"
LIST_ALL_PATTERN = "*"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Protocol tracing level for imaplib when --debug is given
IMAPLIB_DEBUG_LEVEL = 4

logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure the root logger for the whole process; existing handlers are kept."""
    logging.basicConfig(format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    logging.getLogger().setLevel(level)


def verbosity_to_level(debug: bool = False, verbose: bool = False, quiet: bool = False) -> int:
    """Map the mutually exclusive verbosity flags to a logging level."""
    if debug or verbose:
        return logging.DEBUG
    if quiet:
        return logging.WARNING
    return logging.INFO


def format_bytes(size: int) -> str:
    """Humanize a byte count with binary prefixes, e.g. ``12.3 MiB``."""
    return humanize.naturalsize(size, binary=True)


def format_elapsed(seconds: float) -> str:
    """Format a duration as zero-padded ``HH:MM:SS``; hours are unbounded."""
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def build_ssl_context(insecure: bool = False) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def parse_imap_host(host: str) -> tuple[str, int | None, bool]:
    """
    Splits a host setting into (hostname, port, use_ssl).

    Accepts a bare hostname (implicit TLS on the default port) or a URL:
    ``imaps://host:port`` for implicit TLS, ``imap://host:port`` for plain.
    """
    if "://" not in host:
        return host, None, True

    parsed = urllib.parse.urlparse(host)
    scheme = parsed.scheme.lower()
    if not scheme or not parsed.hostname:
        raise ValueError(f"Invalid IMAP host: {host}")
    if scheme in {"imap", "tcp"}:
        use_ssl = False
    elif scheme in {"imaps", "imap+ssl", "imapssl", "ssl"}:
        use_ssl = True
    else:
        raise ValueError(f"Unsupported IMAP scheme: {scheme}")
    return parsed.hostname, parsed.port, use_ssl


def get_imap_connection(
    host,
    user,
    password=None,
    oauth2_token=None,
    *,
    insecure=False,
    starttls=False,
    timeout=None,
    debug=False,
):
    """
    Establishes a connection to the IMAP server and logs in.
    Supports both basic auth (password) and OAuth 2.0 (XOAUTH2), implicit TLS
    and STARTTLS upgrades of a plain connection.
    Returns the connection object or None if failed.
    """
    if not host or not user:
        logger.error("Invalid credentials for %s", host)
        return None

    if not password and not oauth2_token:
        logger.error("Either password or oauth2_token is required for %s", host)
        return None

    try:
        resolved_host, port, use_ssl = parse_imap_host(host)
        context = build_ssl_context(insecure)

        if use_ssl and not starttls:
            port = port or imaplib.IMAP4_SSL_PORT
            conn = imaplib.IMAP4_SSL(resolved_host, port, ssl_context=context, timeout=timeout)
        else:
            port = port or imaplib.IMAP4_PORT
            conn = imaplib.IMAP4(resolved_host, port, timeout=timeout)
            if starttls:
                conn.starttls(ssl_context=context)

        if debug:
            conn.debug = IMAPLIB_DEBUG_LEVEL

        if oauth2_token:
            auth_string = f"user={user}\x01auth=Bearer {oauth2_token}\x01\x01"
            conn.authenticate("XOAUTH2", lambda _: auth_string.encode())
        else:
            conn.login(user, password)
        logger.debug("Connected to %s:%s as %s", resolved_host, port, user)
        return conn
    except Exception as e:
        logger.error("Connection error to %s: %s", host, e)
        return None


def get_imap_connection_from_conf(conf, **options):
    """
    Establishes an IMAP connection using a conf dict.

    conf dict structure:
        {
            "host": str,
            "user": str,
            "password": str or None,
            "oauth2_token": str or None,
            "oauth2": dict or None  # Contains provider, client_id, email, client_secret
        }

    Extra keyword options (insecure, starttls, timeout, debug) are passed through.
    """
    return get_imap_connection(conf["host"], conf["user"], conf.get("password"), conf.get("oauth2_token"), **options)


def quote_folder_name(folder_name: str) -> str:
    """Quote a folder name for use as an IMAP astring argument."""
    escaped = folder_name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return value


def normalize_folder_name(folder_info):
    """
    Parses an IMAP LIST response line to extract the clean folder name.
    Handles quoted names, NIL delimiters and the (meta, literal) tuples imaplib
    produces for names sent as literals.
    """
    if isinstance(folder_info, tuple):
        # (b'(\\HasNoChildren) "/" {11}', b'Odd "Name"'): the literal is the name
        literal = folder_info[1]
        if isinstance(literal, bytes):
            literal = literal.decode("utf-8", errors="ignore")
        return literal

    if isinstance(folder_info, bytes):
        folder_info = folder_info.decode("utf-8", errors="ignore")

    # (flags) "delimiter" name   |   (flags) NIL name
    list_pattern = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?:"(?:\\.|[^"])*"|NIL)\s+(?P<name>.+)$', re.IGNORECASE)
    match = list_pattern.match(folder_info.strip())
    if match:
        return _unquote(match.group("name"))

    # Fallback: take the last part; blank input has no name
    parts = folder_info.split()
    if not parts:
        return ""
    return parts[-1].strip('"')
