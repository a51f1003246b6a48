"""
Minimal in-process IMAP4rev1 server for tests.

Folders are given as ``{"INBOX": [b"raw message", None, ...]}``; a ``None``
message is served as ``BODY[] NIL`` (a message the server cannot read).
Folders named in ``fail_select`` refuse SELECT/EXAMINE, folders named in
``fail_fetch`` refuse FETCH, and ``fail_list`` makes LIST fail. Folders
named in ``literal_names`` are listed as IMAP literals instead of quoted strings.
"""

import socketserver
import threading

RESPONSE_SELECT_FIRST = "NO Select first"


def _parse_sequence_set(seq_set, count):
    """Expand an IMAP sequence set like ``1:3,5`` or ``1:*`` into 1-based numbers."""
    numbers = []
    for part in seq_set.split(","):
        if ":" in part:
            low, high = part.split(":", 1)
            low = count if low == "*" else int(low)
            high = count if high == "*" else int(high)
            if low > high:
                low, high = high, low
            numbers.extend(range(low, high + 1))
        else:
            numbers.append(count if part == "*" else int(part))
    return [n for n in numbers if 1 <= n <= count]


def _unquote(arg):
    arg = arg.strip()
    if len(arg) >= 2 and arg.startswith('"') and arg.endswith('"'):
        return arg[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return arg


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """Handles one client connection; commands are read line by line."""

    def handle(self):
        self.wfile.write(b"* OK [CAPABILITY IMAP4rev1 AUTH=PLAIN AUTH=XOAUTH2] Mock IMAP Server Ready\r\n")
        self.selected_folder = None

        while True:
            try:
                line = self.rfile.readline()
                if not line:
                    break
                line = line.decode("utf-8").strip()
                if not line:
                    continue

                parts = line.split(" ", 2)
                tag = parts[0]
                cmd = parts[1].upper()
                args = parts[2] if len(parts) > 2 else ""
                self.server.commands.append(f"{cmd} {args}".strip())

                if cmd == "LOGIN":
                    self.send_response(tag, "OK LOGIN completed")

                elif cmd == "AUTHENTICATE":
                    self.wfile.write(b"+ \r\n")
                    self.wfile.flush()
                    self.server.auth_payloads.append(self.rfile.readline().strip())
                    self.send_response(tag, "OK AUTHENTICATE completed")

                elif cmd == "LOGOUT":
                    self.wfile.write(b"* BYE Mock IMAP Server logging out\r\n")
                    self.send_response(tag, "OK LOGOUT completed")
                    break

                elif cmd == "CAPABILITY":
                    self.wfile.write(b"* CAPABILITY IMAP4rev1 AUTH=PLAIN AUTH=XOAUTH2\r\n")
                    self.send_response(tag, "OK CAPABILITY completed")

                elif cmd == "NOOP":
                    self.send_response(tag, "OK NOOP completed")

                elif cmd == "LIST":
                    if self.server.fail_list:
                        self.send_response(tag, "NO [UNAVAILABLE] LIST failed")
                        continue
                    for folder in self.server.folders:
                        if folder in self.server.literal_names:
                            encoded = folder.encode()
                            self.wfile.write(f'* LIST (\\HasNoChildren) "/" {{{len(encoded)}}}\r\n'.encode())
                            self.wfile.write(encoded + b"\r\n")
                            continue
                        escaped = folder.replace("\\", "\\\\").replace('"', '\\"')
                        self.wfile.write(f'* LIST (\\HasNoChildren) "/" "{escaped}"\r\n'.encode())
                    self.send_response(tag, "OK LIST completed")

                elif cmd in ("SELECT", "EXAMINE"):
                    folder = _unquote(args)
                    if folder not in self.server.folders or folder in self.server.fail_select:
                        self.selected_folder = None
                        self.send_response(tag, "NO [NONEXISTENT] Folder not found")
                        continue
                    self.selected_folder = folder
                    count = len(self.server.folders[folder])
                    self.wfile.write(f"* {count} EXISTS\r\n".encode())
                    self.wfile.write(b"* 0 RECENT\r\n")
                    self.wfile.write(b"* FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)\r\n")
                    self.wfile.write(b"* OK [UIDVALIDITY 1] UIDs valid\r\n")
                    access = "READ-ONLY" if cmd == "EXAMINE" else "READ-WRITE"
                    self.send_response(tag, f"OK [{access}] {cmd} completed")

                elif cmd == "FETCH":
                    if not self.selected_folder:
                        self.send_response(tag, RESPONSE_SELECT_FIRST)
                        continue
                    if self.selected_folder in self.server.fail_fetch:
                        self.send_response(tag, "NO [SERVERBUG] FETCH failed")
                        continue

                    seq_set = args.split(" ", 1)[0]
                    msgs = self.server.folders[self.selected_folder]
                    for seq in _parse_sequence_set(seq_set, len(msgs)):
                        content = msgs[seq - 1]
                        if content is None:
                            self.wfile.write(f"* {seq} FETCH (BODY[] NIL)\r\n".encode())
                            continue
                        self.wfile.write(f"* {seq} FETCH (BODY[] {{{len(content)}}}\r\n".encode())
                        self.wfile.write(content)
                        self.wfile.write(b")\r\n")
                    self.wfile.flush()
                    self.send_response(tag, "OK FETCH completed")

                else:
                    self.send_response(tag, "BAD Command not recognized")

            except (OSError, UnicodeDecodeError, IndexError, ValueError):
                break

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())
        self.wfile.flush()


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, request_handler_class, initial_folders=None):
        super().__init__(server_address, request_handler_class)
        self.folders = {name: list(msgs) for name, msgs in (initial_folders or {"INBOX": []}).items()}
        self.fail_select = set()
        self.fail_fetch = set()
        self.fail_list = False
        self.literal_names = set()
        self.commands = []
        self.auth_payloads = []


def start_server_thread(port=0, initial_folders=None):
    """Start a server on localhost; returns (server, bound port)."""
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders)
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    return server, server.server_address[1]
