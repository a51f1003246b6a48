"""
IMAP Session Management

Connection configuration (password or OAuth2) and the read-only session
the backup pipeline drives. ImapSession exposes exactly three operations:
list every folder, select one folder read-only, and fetch the whole
selected folder in a single request.
"""

from __future__ import annotations

import imaplib
import logging
import re
from dataclasses import dataclass

import imap_common
import imap_oauth2

# PEEK keeps the server from setting \Seen; EXAMINE is read-only anyway
FETCH_BODY_ITEM = "(BODY.PEEK[])"

_FETCH_META = re.compile(rb"^(\d+)\s+\(")

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Base class for errors raised by ImapSession."""


class FolderListError(SessionError):
    """The account's folders could not be enumerated. Fatal for a backup run."""


class FolderError(SessionError):
    """A single folder could not be selected or fetched."""

    def __init__(self, folder_name, cause):
        self.folder_name = folder_name
        self.cause = cause
        super().__init__(f"{folder_name}: {cause}")


@dataclass(frozen=True)
class MessageHandle:
    """One fetched message: its sequence number and raw body, if the server sent one."""

    sequence: int
    body: bytes | None = None

    @property
    def size(self) -> int:
        return len(self.body) if self.body is not None else 0


def build_imap_conf(host, user, password, client_id=None, client_secret=None):
    """
    Build a standard IMAP connection config dict.

    If client_id is provided, acquires an OAuth2 token (the OAuth2 layer exits
    the process on failure). Otherwise, builds a password-auth config.

    Returns:
        Dict with keys: host, user, password, oauth2_token, oauth2
    """
    oauth2_token = None
    oauth2_info = None

    if client_id:
        oauth2_token, provider = imap_oauth2.acquire_token(host, client_id, user, client_secret)
        oauth2_info = {
            "provider": provider,
            "client_id": client_id,
            "email": user,
            "client_secret": client_secret,
        }

    return {
        "host": host,
        "user": user,
        "password": password,
        "oauth2_token": oauth2_token,
        "oauth2": oauth2_info,
    }


def parse_fetch_response(data) -> list[MessageHandle]:
    """
    Turn imaplib FETCH data into MessageHandles, in the order the server sent them.

    A message whose body arrived as a literal shows up as a (meta, literal)
    tuple. A message without one (``BODY[] NIL``, or an entry the server could
    not read) is a bare bytes line and yields a handle with ``body=None``.
    Closing parentheses and continuation lines are ignored.
    """
    handles: dict[int, MessageHandle] = {}
    for item in data or []:
        if isinstance(item, tuple):
            match = _FETCH_META.match(item[0])
            if not match:
                continue
            sequence = int(match.group(1))
            handles[sequence] = MessageHandle(sequence, item[1])
        elif isinstance(item, bytes):
            match = _FETCH_META.match(item)
            if not match:
                continue
            sequence = int(match.group(1))
            # Unsolicited FLAGS updates must not hide a body we already have
            handles.setdefault(sequence, MessageHandle(sequence, None))
    return list(handles.values())


def _describe_response(typ, data):
    parts = []
    for item in data or []:
        if isinstance(item, bytes):
            parts.append(item.decode("utf-8", errors="replace"))
        elif item is not None:
            parts.append(str(item))
    detail = " ".join(parts).strip()
    return f"{typ} {detail}".strip()


class ImapSession:
    """Read-only view over one authenticated imaplib connection."""

    def __init__(self, conn):
        self._conn = conn
        self.selected_folder = None

    def list_folders(self) -> list[str]:
        try:
            typ, data = self._conn.list('""', imap_common.LIST_ALL_PATTERN)
        except (imaplib.IMAP4.error, OSError) as e:
            raise FolderListError(f"Could not list folders: {e}") from e
        if typ != "OK":
            raise FolderListError(f"Could not list folders: {_describe_response(typ, data)}")

        folders = []
        for item in data:
            # imaplib follows a literal folder name with the (empty) rest of its line
            if item is None or (isinstance(item, bytes) and not item.strip()):
                continue
            name = imap_common.normalize_folder_name(item)
            if not name:
                raise FolderListError(f"Could not parse LIST response: {item!r}")
            folders.append(name)
        return folders

    def select_readonly(self, folder_name: str) -> int:
        """EXAMINE a folder and return its current message count."""
        self.selected_folder = None
        try:
            typ, data = self._conn.select(imap_common.quote_folder_name(folder_name), readonly=True)
        except (imaplib.IMAP4.error, OSError) as e:
            raise FolderError(folder_name, e) from e
        if typ != "OK":
            raise FolderError(folder_name, _describe_response(typ, data))

        try:
            count = int(data[0])
        except (TypeError, ValueError, IndexError) as e:
            raise FolderError(folder_name, f"no message count in SELECT response: {data!r}") from e

        self.selected_folder = folder_name
        return count

    def fetch_all(self, count: int) -> list[MessageHandle]:
        """
        Fetch messages 1..count of the selected folder in one request.

        Messages the server left out of its reply come back as handles
        without a body, so every message in the range is accounted for.
        """
        if count <= 0:
            return []

        folder_name = self.selected_folder
        try:
            typ, data = self._conn.fetch(f"1:{count}", FETCH_BODY_ITEM)
        except (imaplib.IMAP4.error, OSError) as e:
            raise FolderError(folder_name, e) from e
        if typ != "OK":
            raise FolderError(folder_name, _describe_response(typ, data))

        handles = [h for h in parse_fetch_response(data) if 1 <= h.sequence <= count]
        present = {h.sequence for h in handles}
        if len(present) == count:
            return handles
        logger.debug("%s: server returned %d of %d messages", folder_name, len(present), count)
        missing = [MessageHandle(seq) for seq in range(1, count + 1) if seq not in present]
        return sorted(handles + missing, key=lambda h: h.sequence)

    def logout(self) -> None:
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug("Logout failed: %s", e)


def open_session(conf, **options):
    """
    Connect and authenticate using a conf dict from build_imap_conf().

    Returns an ImapSession, or None if the connection or login failed
    (the reason has already been logged).
    """
    conn = imap_common.get_imap_connection_from_conf(conf, **options)
    if conn is None:
        return None
    return ImapSession(conn)
