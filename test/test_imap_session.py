"""
Tests for imap_session.py

Tests cover:
- FETCH response parsing
- Folder listing, read-only selection and whole-folder fetch against the mock server
- Folder and listing failures
- Connection config and session opening
"""

import imaplib
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import imap_oauth2
import imap_session
from imap_session import FolderError, FolderListError, ImapSession, MessageHandle


def connect(port):
    conn = imaplib.IMAP4("localhost", port)
    conn.login("user", "pass")
    return conn


class TestParseFetchResponse:
    """Tests for parse_fetch_response function."""

    def test_literal_bodies(self):
        data = [
            (b"1 (BODY[] {5}", b"hello"),
            b")",
            (b"2 (BODY[] {5}", b"world"),
            b")",
        ]
        assert imap_session.parse_fetch_response(data) == [
            MessageHandle(1, b"hello"),
            MessageHandle(2, b"world"),
        ]

    def test_nil_body(self):
        data = [(b"1 (BODY[] {1}", b"a"), b")", b"2 (BODY[] NIL)", (b"3 (BODY[] {1}", b"c"), b")"]
        handles = imap_session.parse_fetch_response(data)

        assert [h.sequence for h in handles] == [1, 2, 3]
        assert handles[1].body is None
        assert handles[1].size == 0

    def test_flags_update_does_not_hide_body(self):
        data = [(b"1 (BODY[] {1}", b"a"), b")", b"1 (FLAGS (\\Seen))"]
        assert imap_session.parse_fetch_response(data) == [MessageHandle(1, b"a")]

    def test_server_order_kept(self):
        data = [(b"3 (BODY[] {1}", b"c"), b")", (b"1 (BODY[] {1}", b"a"), b")"]
        assert [h.sequence for h in imap_session.parse_fetch_response(data)] == [3, 1]

    def test_empty(self):
        assert imap_session.parse_fetch_response(None) == []
        assert imap_session.parse_fetch_response([None]) == []


class TestImapSession:
    """Tests for ImapSession against the mock server."""

    def test_list_folders(self, single_mock_server):
        server, port = single_mock_server({"INBOX": [], "Sent Items": [], 'Odd "Name"': [], "Work/Projects": []})
        session = ImapSession(connect(port))

        assert session.list_folders() == ["INBOX", "Sent Items", 'Odd "Name"', "Work/Projects"]
        session.logout()

    def test_list_literal_names(self, single_mock_server):
        """Names sent as literals arrive as (meta, literal) tuples followed by an empty line."""
        server, port = single_mock_server({'Odd "Name"': [b"x"], "INBOX": [], "Sent Items": []})
        server.literal_names.update({'Odd "Name"', "Sent Items"})
        session = ImapSession(connect(port))

        folders = session.list_folders()

        assert folders == ['Odd "Name"', "INBOX", "Sent Items"]
        assert session.select_readonly('Odd "Name"') == 1
        session.logout()

    def test_list_blank_lines_skipped(self):
        conn = MagicMock()
        conn.list.return_value = ("OK", [(b'(\\HasNoChildren) "/" {5}', b"Inbox"), b"", None, b'() "/" "Sent"'])

        assert ImapSession(conn).list_folders() == ["Inbox", "Sent"]

    def test_list_unparseable_name(self):
        conn = MagicMock()
        conn.list.return_value = ("OK", [(b'(\\HasNoChildren) "/" {0}', b"")])

        with pytest.raises(FolderListError, match="Could not parse LIST response"):
            ImapSession(conn).list_folders()

    def test_list_failure(self, single_mock_server):
        server, port = single_mock_server({"INBOX": []})
        server.fail_list = True
        session = ImapSession(connect(port))

        with pytest.raises(FolderListError, match="UNAVAILABLE"):
            session.list_folders()
        session.logout()

    def test_select_readonly(self, single_mock_server):
        server, port = single_mock_server({"Sent Items": [b"a", b"b", b"c"]})
        session = ImapSession(connect(port))

        assert session.select_readonly("Sent Items") == 3
        assert session.selected_folder == "Sent Items"
        assert 'EXAMINE "Sent Items"' in server.commands
        session.logout()

    def test_select_failure(self, single_mock_server):
        server, port = single_mock_server({"INBOX": [b"a"], "Broken": [b"b"]})
        server.fail_select.add("Broken")
        session = ImapSession(connect(port))
        session.select_readonly("INBOX")

        with pytest.raises(FolderError) as excinfo:
            session.select_readonly("Broken")

        assert excinfo.value.folder_name == "Broken"
        assert "NONEXISTENT" in str(excinfo.value.cause)
        assert session.selected_folder is None
        session.logout()

    def test_fetch_all(self, single_mock_server):
        bodies = [b"Subject: 1\r\n\r\nOne", None, b"Subject: 3\r\n\r\nThree"]
        server, port = single_mock_server({"INBOX": bodies})
        session = ImapSession(connect(port))

        count = session.select_readonly("INBOX")
        handles = session.fetch_all(count)

        assert handles == [
            MessageHandle(1, bodies[0]),
            MessageHandle(2, None),
            MessageHandle(3, bodies[2]),
        ]
        assert "FETCH 1:3 (BODY.PEEK[])" in server.commands
        session.logout()

    def test_fetch_empty_folder_sends_nothing(self, single_mock_server):
        server, port = single_mock_server({"Empty": []})
        session = ImapSession(connect(port))

        assert session.select_readonly("Empty") == 0
        assert session.fetch_all(0) == []
        assert not any(c.startswith("FETCH") for c in server.commands)
        session.logout()

    def test_fetch_failure(self, single_mock_server):
        server, port = single_mock_server({"Junk": [b"x"]})
        server.fail_fetch.add("Junk")
        session = ImapSession(connect(port))
        count = session.select_readonly("Junk")

        with pytest.raises(FolderError, match="Junk"):
            session.fetch_all(count)
        session.logout()

    def test_fetch_protocol_error(self):
        conn = MagicMock()
        conn.fetch.side_effect = imaplib.IMAP4.abort("socket error: EOF")
        session = ImapSession(conn)
        session.selected_folder = "INBOX"

        with pytest.raises(FolderError, match="EOF"):
            session.fetch_all(2)

    def test_fetch_fills_missing_messages(self):
        conn = MagicMock()
        conn.fetch.return_value = ("OK", [(b"1 (BODY[] {1}", b"a"), b")", (b"3 (BODY[] {1}", b"c"), b")"])
        session = ImapSession(conn)
        session.selected_folder = "INBOX"

        assert session.fetch_all(3) == [
            MessageHandle(1, b"a"),
            MessageHandle(2, None),
            MessageHandle(3, b"c"),
        ]

    def test_select_without_count(self):
        conn = MagicMock()
        conn.select.return_value = ("OK", [None])
        session = ImapSession(conn)

        with pytest.raises(FolderError, match="no message count"):
            session.select_readonly("INBOX")

    def test_logout_ignores_errors(self):
        conn = MagicMock()
        conn.logout.side_effect = OSError("connection reset")
        ImapSession(conn).logout()


class TestBuildImapConf:
    """Tests for build_imap_conf function."""

    def test_password_conf(self):
        conf = imap_session.build_imap_conf("imap.example.com", "user@example.com", "secret")

        assert conf == {
            "host": "imap.example.com",
            "user": "user@example.com",
            "password": "secret",
            "oauth2_token": None,
            "oauth2": None,
        }

    def test_oauth2_conf(self):
        with patch.object(imap_oauth2, "acquire_token", return_value=("token123", "google")) as mock_acquire:
            conf = imap_session.build_imap_conf("imap.gmail.com", "me@gmail.com", None, "cid", "csecret")

        mock_acquire.assert_called_once_with("imap.gmail.com", "cid", "me@gmail.com", "csecret")
        assert conf["oauth2_token"] == "token123"
        assert conf["oauth2"] == {
            "provider": "google",
            "client_id": "cid",
            "email": "me@gmail.com",
            "client_secret": "csecret",
        }


class TestOpenSession:
    """Tests for open_session function."""

    def test_returns_session(self, single_mock_server):
        _, port = single_mock_server({"INBOX": []})
        conf = imap_session.build_imap_conf(f"imap://localhost:{port}", "user", "pass")

        session = imap_session.open_session(conf, timeout=5)

        assert isinstance(session, ImapSession)
        assert session.list_folders() == ["INBOX"]
        session.logout()

    def test_returns_none_on_failure(self):
        conf = imap_session.build_imap_conf("imap.example.com", "user", "pass")
        with patch("imap_common.get_imap_connection", return_value=None):
            assert imap_session.open_session(conf) is None
