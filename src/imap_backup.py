"""
IMAP Archive Backup Pipeline

Copies every message of every folder of an IMAP account into a single
archive file. Each message is stored as ``<folder>/<sha256 of body>.eml``
(RFC 5322 bytes exactly as fetched), so identical bodies within a folder
collapse to one entry.

Work is strictly sequential: one folder is selected at a time, its whole
message range is fetched in one request, then written out message by
message before the next folder is touched.

Failure scopes:
- A message without a body is skipped with a warning.
- A folder that cannot be selected or fetched is skipped with a warning
  and counts zero bytes.
- A failure to list folders (FolderListError) or to write the archive
  (ArchiveWriteError) aborts the run and propagates to the caller.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field

import imap_archive
import imap_common
from imap_progress import NullProgress
from imap_session import FolderError

MESSAGE_SUFFIX = ".eml"

logger = logging.getLogger(__name__)


def fingerprint(body: bytes) -> str:
    """Lowercase hex SHA-256 of a message body."""
    return hashlib.sha256(body).hexdigest()


def entry_path(folder_name: str, body: bytes) -> str:
    return f"{folder_name}/{fingerprint(body)}{MESSAGE_SUFFIX}"


@dataclass(frozen=True)
class WriteOutcome:
    """
    Result of handing one message to the archive.

    ``path`` is None when the message had no body and nothing was written.
    ``written`` is False for skipped messages and for bodies already
    archived under the same name in this folder.
    """

    path: str | None = None
    size: int = 0
    written: bool = False

    @property
    def skipped(self) -> bool:
        return self.path is None


SKIPPED_NO_BODY = WriteOutcome()


@dataclass
class FolderResult:
    name: str
    size: int = 0
    messages: int = 0
    skipped: int = 0
    error: object = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BackupContext:
    """The per-run collaborators: an ImapSession, an ArchiveSink and a progress sink."""

    session: object
    archive: object
    progress: object = field(default_factory=NullProgress)


def write_message(archive, folder_name, message) -> WriteOutcome:
    """
    Store one message under its content-derived name.

    Archive failures raise ArchiveWriteError and are never caught here.
    """
    if message.body is None:
        return SKIPPED_NO_BODY

    path = entry_path(folder_name, message.body)
    written = archive.write_entry(path, message.body, imap_archive.ENTRY_MODE)
    return WriteOutcome(path=path, size=len(message.body), written=written)


def process_folder(context: BackupContext, folder_name: str) -> FolderResult:
    """
    Back up one folder.

    Selection and fetch failures are logged and reported through
    ``FolderResult.error`` with a zero size; archive failures propagate.
    """
    result = FolderResult(folder_name)
    session = context.session

    try:
        exists = session.select_readonly(folder_name)
        messages = session.fetch_all(exists)
    except FolderError as e:
        logger.warning("Skipping folder %s: %s", folder_name, e.cause)
        result.error = e
        return result

    context.archive.begin_namespace(folder_name)

    count = len(messages)
    counter = context.progress.new_counter(count, label=folder_name)
    try:
        for index, message in enumerate(messages, start=1):
            outcome = write_message(context.archive, folder_name, message)
            if outcome.skipped:
                logger.warning("%d/%d -> Skipping: Unable to retrieve message body", index, count)
                result.skipped += 1
            else:
                result.size += outcome.size
                logger.debug("%d/%d -> %s [%s]", index, count, outcome.path, imap_common.format_bytes(outcome.size))
                # Current folder and the amount of data fetched from it so far
                counter.set_label(f"{folder_name} [{imap_common.format_bytes(result.size)}]")
            result.messages += 1
            counter.increment()
    finally:
        counter.finish()

    return result


def run_backup(context: BackupContext) -> tuple[int, float]:
    """
    Back up every folder of the account.

    Returns (total bytes, elapsed seconds). The caller finalizes the archive
    and reports the summary.
    """
    start = time.monotonic()

    folders = context.session.list_folders()
    logger.debug("Found %d folders", len(folders))

    total = 0
    counter = context.progress.new_counter(len(folders), label="Folders", unit="folder")
    try:
        for folder_name in folders:
            result = process_folder(context, folder_name)
            total += result.size
            if result.ok and result.skipped:
                logger.info(
                    "%s: copied %s (%d of %d messages skipped)",
                    folder_name,
                    imap_common.format_bytes(result.size),
                    result.skipped,
                    result.messages,
                )
            elif result.ok:
                logger.info("%s: copied %s", folder_name, imap_common.format_bytes(result.size))
            counter.increment()
    finally:
        counter.finish()

    return total, time.monotonic() - start
