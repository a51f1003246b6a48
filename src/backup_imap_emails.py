"""
IMAP Archive Backup Script

Backs up every folder of an IMAP account into a single archive file.
Each message is stored as "<folder>/<sha256 of the message>.eml" (RFC 5322
bytes exactly as served), which most email clients can open after extraction.

Features:
- Whole-account snapshot: every folder returned by LIST is copied.
- Content-addressed names: identical messages in a folder are stored once.
- Archive formats: tar.zst (default), tar.gz, tar.xz, tar or zip, picked
  from --format or the destination file suffix.
- Fault isolation: unreadable folders and messages are skipped with a warning;
  only listing failures and archive write failures stop the run.

Configuration (Environment Variables, also read from a .env file):
  SRC_IMAP_HOST, SRC_IMAP_USERNAME: Source account.
  SRC_IMAP_PASSWORD: Source password (or App Password).

  OAuth2 (Optional - instead of password):
  SRC_OAUTH2_CLIENT_ID: OAuth2 Client ID
  SRC_OAUTH2_CLIENT_SECRET: OAuth2 Client Secret (required for Google)

  BACKUP_ARCHIVE_PATH: Destination archive file.
  BACKUP_ARCHIVE_FORMAT: Archive format, overrides the file suffix.
  IMAP_TIMEOUT: Socket timeout in seconds for the IMAP connection.

Usage:
  python3 backup_imap_emails.py \
      --src-host "imap.example.com" \
      --src-user "you@example.com" \
      --src-pass "your-app-password" \
      --dest-path "./mail-backup.tar.zst"
"""

import argparse
import contextlib
import logging
import os
import sys

from dotenv import find_dotenv, load_dotenv
from tqdm.contrib.logging import logging_redirect_tqdm

import imap_archive
import imap_backup
import imap_common
import imap_oauth2
import imap_session
from imap_progress import NullProgress, TqdmProgress

logger = logging.getLogger("backup_imap_emails")


def build_parser():
    parser = argparse.ArgumentParser(description="Back up an IMAP account into a single archive file.")

    # Source
    parser.add_argument(
        "--src-host",
        default=os.getenv("SRC_IMAP_HOST"),
        help="Source IMAP server (host, imaps://host:port or imap://host:port)",
    )
    parser.add_argument("-u", "--src-user", default=os.getenv("SRC_IMAP_USERNAME"), help="Source Username")
    parser.add_argument("-p", "--src-pass", default=os.getenv("SRC_IMAP_PASSWORD"), help="Source Password")
    parser.add_argument(
        "--src-client-id",
        default=os.getenv("SRC_OAUTH2_CLIENT_ID"),
        help="OAuth2 Client ID (enables XOAUTH2 instead of password login)",
    )
    parser.add_argument(
        "--src-client-secret",
        default=os.getenv("SRC_OAUTH2_CLIENT_SECRET"),
        help="OAuth2 Client Secret (required for Google)",
    )

    # Transport
    parser.add_argument("--starttls", action="store_true", help="Upgrade a plain connection with STARTTLS")
    parser.add_argument("-i", "--insecure", action="store_true", help="Accept invalid TLS certificates")
    parser.add_argument(
        "--timeout", type=float, default=os.getenv("IMAP_TIMEOUT"), help="Socket timeout in seconds"
    )

    # Destination
    parser.add_argument("--dest-path", default=os.getenv("BACKUP_ARCHIVE_PATH"), help="Archive file to write")
    parser.add_argument(
        "--format",
        choices=imap_archive.SUPPORTED_FORMATS,
        default=os.getenv("BACKUP_ARCHIVE_FORMAT"),
        help="Archive format (default: from the file suffix, else tar.zst)",
    )
    parser.add_argument("--compression-level", type=int, help="zstd or deflate compression level")

    # Output
    parser.add_argument("--no-progress", action="store_true", help="Do not draw progress bars")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-d", "--debug", action="store_true", help="Enable debugging output (incl. IMAP traffic)")
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Suppress informational messages")

    return parser


def print_summary(args, dest_path, fmt, provider):
    print("\n--- Configuration Summary ---")
    print(f"Source Host     : {args.src_host}")
    print(f"Source User     : {args.src_user}")
    print(f"Authentication  : {imap_oauth2.auth_description(provider)}")
    print(f"Archive Path    : {dest_path}")
    print(f"Archive Format  : {fmt}")
    if args.insecure:
        print("TLS Verification: DISABLED")
    print("-----------------------------\n")


def main():
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path)

    args = build_parser().parse_args()
    imap_common.setup_logging(imap_common.verbosity_to_level(args.debug, args.verbose, args.quiet))
    if dotenv_path:
        logger.debug("Loaded environment from %s", dotenv_path)

    # Validate
    missing = []
    if not args.src_host:
        missing.append("SRC_IMAP_HOST")
    if not args.src_user:
        missing.append("SRC_IMAP_USERNAME")
    if not args.src_pass and not args.src_client_id:
        missing.append("SRC_IMAP_PASSWORD")

    if missing:
        print(f"Error: Missing credentials: {', '.join(missing)}")
        sys.exit(1)

    if not args.dest_path:
        print("Error: Destination archive path is required.")
        print("Please provide --dest-path or set environment variable BACKUP_ARCHIVE_PATH.")
        sys.exit(1)

    dest_path = os.path.expanduser(args.dest_path)
    fmt = args.format or imap_archive.detect_format(dest_path) or imap_archive.DEFAULT_FORMAT
    if fmt not in imap_archive.SUPPORTED_FORMATS:
        print(f"Error: Unsupported archive format: {fmt}")
        sys.exit(1)

    conf = imap_session.build_imap_conf(
        args.src_host, args.src_user, args.src_pass, args.src_client_id, args.src_client_secret
    )
    provider = conf["oauth2"]["provider"] if conf["oauth2"] else None

    if not args.quiet:
        print_summary(args, dest_path, fmt, provider)

    session = imap_session.open_session(
        conf, insecure=args.insecure, starttls=args.starttls, timeout=args.timeout, debug=args.debug
    )
    if session is None:
        sys.exit(1)

    show_progress = not args.no_progress and sys.stderr.isatty()
    progress = TqdmProgress() if show_progress else NullProgress()
    redirect = logging_redirect_tqdm() if show_progress else contextlib.nullcontext()

    try:
        archive = imap_archive.open_archive(dest_path, fmt, args.compression_level)
        context = imap_backup.BackupContext(session, archive, progress)
        with redirect:
            total, elapsed = imap_backup.run_backup(context)
        archive.finalize()
    except KeyboardInterrupt:
        logger.warning("Backup interrupted by user.")
        sys.exit(130)
    except (imap_session.FolderListError, imap_archive.ArchiveWriteError) as e:
        logger.error("Fatal Error: %s", e)
        sys.exit(1)
    finally:
        session.logout()

    logger.info("Archive written to %s (%d entries)", dest_path, archive.entry_count)
    logger.info("Copy completed in %s", imap_common.format_elapsed(elapsed))
    logger.info("Total copy size is %s", imap_common.format_bytes(total))


if __name__ == "__main__":
    main()
