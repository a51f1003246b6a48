"""
Shared pytest fixtures and utilities for IMAP archive backup tests.
"""

import imaplib
import os
import socket
import sys
import time
from contextlib import contextmanager

import pytest

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

from mock_imap_server import start_server_thread


def get_free_port():
    """Get a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


@pytest.fixture
def single_mock_server():
    """
    Factory fixture that starts mock IMAP servers with the given folders.
    Automatically shuts them down after the test.
    """
    servers = []

    def _create(initial_data=None):
        port = get_free_port()
        server, actual_port = start_server_thread(port, initial_data)
        time.sleep(0.1)
        servers.append(server)
        return server, actual_port

    yield _create

    for server in servers:
        server.shutdown()
        server.server_close()


@contextmanager
def temp_env(env):
    original = os.environ.copy()
    os.environ.clear()
    os.environ.update(env)
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(original)


@contextmanager
def temp_argv(args):
    original = sys.argv[:]
    sys.argv = list(args)
    try:
        yield
    finally:
        sys.argv = original


@pytest.fixture(autouse=True)
def clean_sys_argv():
    """Ensure sys.argv is clean for all tests."""
    original = sys.argv[:]
    sys.argv = ["test_script.py"]
    yield
    sys.argv = original


def make_single_mock_connection(port):
    """
    Creates a replacement for imap_common.get_imap_connection that connects
    to the mock server in plain text, whatever host and transport options it is given.
    """

    def mock_conn(host, user, password=None, oauth2_token=None, **options):
        c = imaplib.IMAP4("localhost", port)
        c.login(user, password or "")
        return c

    return mock_conn


__all__ = [
    "single_mock_server",
    "make_single_mock_connection",
    "temp_env",
    "temp_argv",
]
