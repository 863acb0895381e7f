#!/usr/bin/env python3
"""
Daily Mail Report Script

Builds a per-date text report of the mail exchanged by one or more IMAP accounts.
- Fetches the last N messages of the inbox and of the sent folder
- Keeps only messages dated on the target day whose sender is not an automated or
  marketing address
- Extracts a readable body (plain text preferred, HTML reduced to text) and the
  attachment filenames
- Appends the records, sorted by date, to a YYYYMMDD.txt report file
"""

import argparse
import datetime
import email.utils
import imaplib
import json
import os
import re
import sys
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from email.header import decode_header, make_header
from email.parser import BytesHeaderParser
from enum import Enum
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from dotenv import load_dotenv

from content_processor import AttachmentInfo, ContentProcessor


# Senders containing any of these substrings never make it into a report
FILTER_KEYWORDS: Tuple[str, ...] = (
    "voice.google.com",
    "noreply",
    "donotreply",
    "no-reply",
    "mailtrack.io",
    "dice.com",
    "medium.com",
    "jobot.com",
    "lensa.com",
    "experteer.com",
    "calendly.com",
    "linkedin.com",
    "indeed.com",
    "glassdoor.com",
)

DEFAULT_FETCH_WINDOW = 500
DEFAULT_FETCH_TIMEOUT = 60
REPORT_SEPARATOR = "=" * 56
TARGET_DATE_FORMAT = "%Y-%m-%d"
REPORT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ENVELOPE_FETCH_ITEMS = "(UID FLAGS BODY.PEEK[HEADER.FIELDS (DATE FROM TO)])"
BODY_FETCH_ITEMS = "(BODY.PEEK[])"

UID_PATTERN = re.compile(rb"UID (\d+)")
FLAGS_PATTERN = re.compile(rb"FLAGS \(([^)]*)\)")

ProgressCallback = Callable[[float, str], None]


class MailReportError(Exception):
    """Base class for errors that abort a report run"""


class ConfigError(MailReportError):
    """Missing or invalid configuration"""


class AuthError(MailReportError):
    """Connection or login failure, fatal for the account"""


class FolderError(MailReportError):
    """Folder missing or not selectable"""


class FetchError(MailReportError):
    """Protocol failure while fetching the message window of a folder"""


class ReportWriteError(MailReportError, OSError):
    """Report file cannot be created or appended"""


class MailType(Enum):
    SENT = "Sent"
    RECEIVED = "Received"


@dataclass
class ProviderConfig:
    """Configuration for email provider IMAP settings"""
    imap_server: str
    port: int
    inbox_folder: str
    sent_folder: str


@dataclass(frozen=True)
class Credentials:
    email: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class Envelope:
    """Date, first sender and first recipient of a message"""
    date: Optional[datetime.datetime] = None
    from_address: str = ""
    from_name: str = ""
    to_address: str = ""
    to_name: str = ""

    def date_string(self) -> Optional[str]:
        """Envelope date as YYYY-MM-DD in the zone the message reports"""
        if self.date is None:
            return None
        return self.date.strftime(TARGET_DATE_FORMAT)


@dataclass(frozen=True)
class FetchWindow:
    """Sequence number range requested from a folder (inclusive, empty when last < first)"""
    first: int
    last: int

    @classmethod
    def last_messages(cls, message_count: int, window_size: int = DEFAULT_FETCH_WINDOW) -> "FetchWindow":
        """
        Cover the newest messages of a folder.

        Args:
            message_count: Number of messages reported by SELECT
            window_size: Maximum number of messages to request

        Returns:
            FetchWindow: Window over the last min(message_count, window_size) messages
        """
        if message_count <= 0 or window_size <= 0:
            return cls(1, 0)
        return cls(max(1, message_count - window_size + 1), message_count)

    @property
    def size(self) -> int:
        return max(0, self.last - self.first + 1)

    @property
    def message_set(self) -> str:
        return f"{self.first}:{self.last}"

    def sequence_numbers(self) -> range:
        return range(self.first, self.last + 1)


@dataclass
class RawMessage:
    """One message as streamed by the fetcher; body is None when it was not requested"""
    seq: int
    uid: Optional[str]
    flags: Tuple[str, ...]
    envelope: Envelope
    body: Optional[bytes] = None


@dataclass(frozen=True)
class MessageRecord:
    """A filtered, decoded message ready for the report"""
    date: datetime.datetime
    from_address: str
    from_name: str
    to_address: str
    to_name: str
    content: str
    attachments: Tuple[AttachmentInfo, ...]
    mail_type: MailType
    uid: Optional[str] = None
    folder: str = ""


@dataclass
class ProcessingStats:
    """Statistics for a report run with error tracking and timing"""
    total_scanned: int = 0
    skipped_date: int = 0
    skipped_keyword: int = 0
    retained: int = 0
    decode_warnings: int = 0
    errors: int = 0

    folder_errors: int = 0
    fetch_errors: int = 0
    output_errors: int = 0

    start_time: Optional[datetime.datetime] = None
    end_time: Optional[datetime.datetime] = None

    def start_processing(self) -> None:
        self.start_time = datetime.datetime.now()

    def end_processing(self) -> None:
        self.end_time = datetime.datetime.now()

    def get_processing_duration(self) -> Optional[str]:
        """Get formatted processing duration"""
        if self.start_time and self.end_time:
            total_seconds = int((self.end_time - self.start_time).total_seconds())
            hours, remainder = divmod(total_seconds, 3600)
            minutes, seconds = divmod(remainder, 60)

            if hours > 0:
                return f"{hours}h {minutes}m {seconds}s"
            elif minutes > 0:
                return f"{minutes}m {seconds}s"
            else:
                return f"{seconds}s"
        return None

    def increment_error_type(self, error_type: str) -> None:
        """Increment specific error type and total errors"""
        self.errors += 1

        if error_type == 'folder':
            self.folder_errors += 1
        elif error_type == 'fetch':
            self.fetch_errors += 1
        elif error_type == 'output':
            self.output_errors += 1

    def get_summary(self) -> str:
        """Get a formatted summary of processing statistics"""
        duration_str = self.get_processing_duration()
        duration_line = f"\n  Processing time: {duration_str}" if duration_str else ""

        summary = (f"Processing Summary:\n"
                   f"  Total scanned: {self.total_scanned}\n"
                   f"  Skipped (other date): {self.skipped_date}\n"
                   f"  Skipped (filtered sender): {self.skipped_keyword}\n"
                   f"  Retained: {self.retained}\n"
                   f"  Decode warnings: {self.decode_warnings}\n"
                   f"  Total errors: {self.errors}{duration_line}")

        if self.errors > 0:
            error_details = []
            if self.folder_errors > 0:
                error_details.append(f"folder: {self.folder_errors}")
            if self.fetch_errors > 0:
                error_details.append(f"fetch: {self.fetch_errors}")
            if self.output_errors > 0:
                error_details.append(f"output: {self.output_errors}")

            if error_details:
                summary += f"\n  Error breakdown: {', '.join(error_details)}"

        return summary

    def get_quick_stats(self) -> str:
        """Get a quick one-line summary for progress logging"""
        return f"scanned: {self.total_scanned}, retained: {self.retained}, errors: {self.errors}"


class ReportConfig:
    """Handles configuration loading and provider-specific settings"""

    PROVIDER_CONFIGS = {
        'gmail': ProviderConfig('imap.gmail.com', 993, 'INBOX', '[Gmail]/Sent Mail'),
        'icloud': ProviderConfig('imap.mail.me.com', 993, 'INBOX', 'Sent Messages'),
    }

    def __init__(self):
        self.provider: str = 'gmail'
        self.imap_server: str = 'imap.gmail.com'
        self.port: int = 993
        self.inbox_folder: str = 'INBOX'
        self.sent_folder: str = '[Gmail]/Sent Mail'
        self.fetch_window: int = DEFAULT_FETCH_WINDOW
        self.fetch_timeout: int = DEFAULT_FETCH_TIMEOUT
        self.output_dir: str = '.'
        self.progress_interval: int = 100
        self.filter_keywords: Tuple[str, ...] = FILTER_KEYWORDS
        self.credentials_file: Optional[str] = None
        self.email_address: Optional[str] = None
        self.app_password: Optional[str] = None

    def load_environment(self) -> None:
        """
        Load settings from the environment and an optional .env file.

        Raises:
            ConfigError: If the provider is unknown or a numeric setting is invalid
        """
        load_dotenv()

        self.provider = os.getenv('PROVIDER', self.provider).strip().lower()
        if self.provider not in self.PROVIDER_CONFIGS:
            raise ConfigError(f"Invalid PROVIDER '{self.provider}'. "
                              f"Supported providers: {', '.join(self.PROVIDER_CONFIGS.keys())}")

        provider_config = self.PROVIDER_CONFIGS[self.provider]
        self.imap_server = os.getenv('IMAP_SERVER', provider_config.imap_server).strip()
        self.port = self._get_int('IMAP_PORT', provider_config.port)
        self.inbox_folder = os.getenv('INBOX_FOLDER', provider_config.inbox_folder).strip()
        self.sent_folder = os.getenv('SENT_FOLDER', provider_config.sent_folder).strip()
        self.fetch_window = self._get_int('FETCH_WINDOW', self.fetch_window)
        self.fetch_timeout = self._get_int('FETCH_TIMEOUT', self.fetch_timeout)
        self.progress_interval = self._get_int('PROGRESS_INTERVAL', self.progress_interval)
        self.output_dir = os.getenv('OUTPUT_DIR', self.output_dir).strip() or '.'
        self.credentials_file = os.getenv('CREDENTIALS_FILE', '').strip() or None
        self.email_address = os.getenv('EMAIL_ADDRESS', '').strip() or None
        self.app_password = os.getenv('APP_PASSWORD', '').strip() or None

        keywords = os.getenv('FILTER_KEYWORDS')
        if keywords is not None and keywords.strip():
            self.filter_keywords = parse_keywords(keywords)

        print(f"Configuration loaded for {self.provider} ({self.imap_server}:{self.port})")

    def load_accounts(self) -> List[Credentials]:
        """
        Resolve the accounts to process.

        A credentials file (JSON list of {"email", "password"}) takes precedence over
        EMAIL_ADDRESS / APP_PASSWORD.

        Returns:
            list: Credentials in processing order

        Raises:
            ConfigError: If no usable credentials are configured
        """
        if self.credentials_file:
            return load_credentials_file(self.credentials_file)

        missing_vars = []
        if not self.email_address:
            missing_vars.append('EMAIL_ADDRESS')
        if not self.app_password:
            missing_vars.append('APP_PASSWORD')

        if missing_vars:
            raise ConfigError(f"Missing required environment variables: {', '.join(missing_vars)} "
                              f"(or set CREDENTIALS_FILE)")

        return [Credentials(self.email_address, self.app_password)]

    def _get_int(self, name: str, default: int) -> int:
        value = os.getenv(name)
        if value is None or not value.strip():
            return default
        try:
            number = int(value)
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got '{value}'")
        if number <= 0:
            raise ConfigError(f"{name} must be positive, got {number}")
        return number


def parse_keywords(value: str) -> Tuple[str, ...]:
    """Split a comma-separated keyword list, dropping blanks"""
    return tuple(keyword.strip() for keyword in value.split(',') if keyword.strip())


def load_credentials_file(path: str) -> List[Credentials]:
    """
    Read accounts from a JSON credentials file.

    Args:
        path: File holding a list of {"email": ..., "password": ...} objects

    Returns:
        list: Parsed credentials

    Raises:
        ConfigError: If the file is missing, unreadable or malformed
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            entries = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Credentials file not found: {path}")
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to read credentials file {path}: {str(e)}")

    if not isinstance(entries, list):
        raise ConfigError(f"Credentials file {path} must contain a list")

    accounts = []
    for index, entry in enumerate(entries, 1):
        if not isinstance(entry, dict) or not entry.get('email') or not entry.get('password'):
            raise ConfigError(f"Credentials entry {index} in {path} needs 'email' and 'password'")
        accounts.append(Credentials(str(entry['email']).strip(), str(entry['password'])))

    if not accounts:
        raise ConfigError(f"Credentials file {path} contains no accounts")

    return accounts


def _decode_display_name(name: str) -> str:
    if not name or "=?" not in name:
        return name or ""
    try:
        return str(make_header(decode_header(name)))
    except Exception:
        return name


def _first_address(values: Sequence[str]) -> Tuple[str, str]:
    """Return (address, display name) of the first mailbox in address header values"""
    for name, address in email.utils.getaddresses(list(values)):
        if address or name:
            return address, _decode_display_name(name)
    return "", ""


def parse_message_date(value: Optional[str]) -> Optional[datetime.datetime]:
    """
    Parse a Date header keeping the zone it was written in.

    Args:
        value: Raw Date header value

    Returns:
        datetime: Timezone-aware datetime (naive values are taken as UTC), or None
    """
    if not value:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(str(value).strip())
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def parse_envelope(header_bytes: bytes) -> Envelope:
    """
    Build an Envelope from the DATE/FROM/TO header fields of a message.

    Args:
        header_bytes: Header block returned by BODY[HEADER.FIELDS (DATE FROM TO)]

    Returns:
        Envelope: Parsed envelope; missing fields are left empty
    """
    headers = BytesHeaderParser().parsebytes(header_bytes or b"")
    from_address, from_name = _first_address(headers.get_all('From', []))
    to_address, to_name = _first_address(headers.get_all('To', []))
    return Envelope(
        date=parse_message_date(headers.get('Date')),
        from_address=from_address,
        from_name=from_name,
        to_address=to_address,
        to_name=to_name,
    )


def parse_fetch_response(data) -> Tuple[bytes, Optional[bytes]]:
    """
    Split an imaplib FETCH response into its metadata text and first literal.

    Servers may send data items before or after the literal, so every non-literal
    fragment is concatenated.

    Returns:
        tuple: (metadata bytes, literal bytes or None)
    """
    metadata = b""
    literal = None
    for item in data or []:
        if isinstance(item, tuple):
            metadata += item[0] or b""
            if literal is None and len(item) > 1:
                literal = item[1]
        elif isinstance(item, bytes):
            metadata += item
    return metadata, literal


def quote_folder(name: str) -> str:
    """Quote a mailbox name for SELECT when it contains spaces"""
    if name.startswith('"') or ' ' not in name:
        return name
    return '"' + name.replace('\\', '\\\\').replace('"', '\\"') + '"'


class MailboxFilter:
    """Decides which envelopes belong in the report and which way they travelled"""

    def __init__(self, target_date: str, account_address: str, keywords: Sequence[str] = FILTER_KEYWORDS):
        self.target_date = target_date
        self.account_address = account_address
        self.keywords = tuple(keywords)

    def matches_date(self, envelope: Envelope) -> bool:
        return envelope.date_string() == self.target_date

    def is_excluded_sender(self, from_address: str) -> bool:
        return any(keyword in from_address for keyword in self.keywords)

    def accept(self, envelope: Envelope) -> bool:
        """
        Check whether a message should be decoded and reported.

        Args:
            envelope: Message envelope

        Returns:
            bool: True if dated on the target day and not from a filtered sender
        """
        if not self.matches_date(envelope):
            return False
        return not self.is_excluded_sender(envelope.from_address)

    def classify(self, from_address: str) -> MailType:
        # Substring containment, so a sender address embedding the account address counts as Sent
        if self.account_address and self.account_address in from_address:
            return MailType.SENT
        return MailType.RECEIVED


def accept(envelope: Envelope, target_date: str, excluded_keywords: Sequence[str] = FILTER_KEYWORDS) -> bool:
    """Pure form of MailboxFilter.accept"""
    return MailboxFilter(target_date, "", excluded_keywords).accept(envelope)


class IMAPConnectionManager:
    """Manages one IMAP session: login, folder selection and windowed message streaming"""

    def __init__(self, config: ReportConfig, credentials: Credentials):
        self.config = config
        self.credentials = credentials
        self.connection: Optional[imaplib.IMAP4_SSL] = None
        self.is_connected = False
        self.selected_folder: Optional[str] = None
        self.fetch_timeout = config.fetch_timeout

    def connect(self) -> None:
        """
        Open the TLS session and authenticate. No retry is attempted.

        Raises:
            AuthError: On connection failure, timeout or rejected credentials
        """
        print(f"Connecting to {self.config.imap_server}:{self.config.port} as {self.credentials.email}")

        try:
            # The timeout applies to every socket operation of the session
            self.connection = imaplib.IMAP4_SSL(self.config.imap_server, self.config.port,
                                                timeout=self.fetch_timeout)
        except (OSError, UnicodeError) as e:
            self.connection = None
            raise AuthError(f"Connection to {self.config.imap_server} failed: {str(e)}") from e

        try:
            self.connection.login(self.credentials.email, self.credentials.password)
        except (imaplib.IMAP4.error, OSError, UnicodeError) as e:
            # imaplib sends credentials as ASCII only
            self._shutdown_quietly()
            raise AuthError(f"Login failed for {self.credentials.email}: {str(e)}") from e

        self.is_connected = True
        print(f"Logged in as {self.credentials.email}")

    def list_folders(self) -> List[str]:
        """
        List available IMAP folders to help troubleshoot folder selection issues.

        Returns:
            list: Folder names, empty on failure
        """
        if not self.is_connected or not self.connection:
            return []

        try:
            status, folders = self.connection.list()
        except (imaplib.IMAP4.error, OSError) as e:
            print(f"Warning: Failed to list folders: {str(e)}")
            return []

        if status != 'OK':
            return []

        folder_names = []
        for folder in folders or []:
            if folder is None:
                continue
            folder_str = folder.decode('utf-8', errors='replace') if isinstance(folder, bytes) else str(folder)
            # Format is typically: (\HasNoChildren) "/" "INBOX"
            parts = folder_str.split('"')
            if len(parts) >= 3:
                folder_names.append(parts[-2])
            else:
                folder_names.append(folder_str.rsplit(' ', 1)[-1])
        return folder_names

    def select_folder(self, folder: str) -> int:
        """
        Select a folder read-only.

        Args:
            folder: Folder name, e.g. INBOX or [Gmail]/Sent Mail

        Returns:
            int: Number of messages in the folder

        Raises:
            FolderError: If the folder does not exist or cannot be selected
        """
        if not self.is_connected or not self.connection:
            raise FolderError(f"Cannot select {folder}: not connected")

        try:
            status, data = self.connection.select(quote_folder(folder), readonly=True)
        except (imaplib.IMAP4.error, OSError) as e:
            raise FolderError(f"Failed to select folder '{folder}': {str(e)}") from e

        if status != 'OK':
            available = self.list_folders()
            hint = f" (available: {', '.join(available)})" if available else ""
            raise FolderError(f"Failed to select folder '{folder}': {data}{hint}")

        self.selected_folder = folder
        try:
            message_count = int(data[0]) if data and data[0] else 0
        except ValueError:
            message_count = 0
        print(f"Folder '{folder}' contains {message_count} messages")
        return message_count

    def compute_window(self, message_count: int) -> FetchWindow:
        return FetchWindow.last_messages(message_count, self.config.fetch_window)

    def fetch(self, folder: str,
              want_body: Optional[Callable[[Envelope], bool]] = None,
              on_progress: Optional[Callable[[float], None]] = None) -> Iterator[RawMessage]:
        """
        Stream the newest messages of a folder one at a time.

        The header fields are fetched for every message of the window; the full
        body is only fetched when want_body accepts the envelope. on_progress
        receives 1 / window size after the caller has consumed each message,
        whether it was kept or not.

        Args:
            folder: Folder to select
            want_body: Predicate deciding whether the body is downloaded
            on_progress: Progress increment callback

        Yields:
            RawMessage: Messages in ascending sequence order

        Raises:
            FolderError: If the folder cannot be selected
            FetchError: If the server fails mid-window
        """
        message_count = self.select_folder(folder)
        window = self.compute_window(message_count)

        if window.size == 0:
            print(f"No messages to scan in '{folder}'")
            return

        print(f"Scanning messages {window.message_set} of '{folder}' ({window.size} messages)")
        increment = 1.0 / window.size

        for seq in window.sequence_numbers():
            uid, flags, envelope = self.fetch_envelope(seq)

            body = None
            if want_body is None or want_body(envelope):
                body = self.fetch_body(seq)

            yield RawMessage(seq=seq, uid=uid, flags=flags, envelope=envelope, body=body)

            if on_progress:
                on_progress(increment)

    def fetch_envelope(self, seq: int) -> Tuple[Optional[str], Tuple[str, ...], Envelope]:
        """
        Fetch UID, flags and DATE/FROM/TO header fields of one message.

        Returns:
            tuple: (uid, flags, envelope)

        Raises:
            FetchError: On a protocol or connection failure
        """
        data = self._fetch(seq, ENVELOPE_FETCH_ITEMS)
        metadata, header_bytes = parse_fetch_response(data)

        uid_match = UID_PATTERN.search(metadata)
        uid = uid_match.group(1).decode('ascii') if uid_match else None

        flags_match = FLAGS_PATTERN.search(metadata)
        flags = tuple(flag.decode('ascii', errors='replace') for flag in flags_match.group(1).split()) if flags_match else ()

        return uid, flags, parse_envelope(header_bytes or b"")

    def fetch_body(self, seq: int) -> bytes:
        """
        Fetch the full RFC 822 content of one message without setting \\Seen.

        Raises:
            FetchError: On a protocol or connection failure
        """
        data = self._fetch(seq, BODY_FETCH_ITEMS)
        _, literal = parse_fetch_response(data)
        if literal is None:
            print(f"Warning: No body returned for message {seq}")
            return b""
        return literal

    def _fetch(self, seq: int, items: str):
        if not self.is_connected or not self.connection:
            raise FetchError(f"Cannot fetch message {seq}: not connected")

        try:
            status, data = self.connection.fetch(str(seq), items)
        except (imaplib.IMAP4.error, OSError) as e:
            raise FetchError(f"Failed to fetch message {seq}: {str(e)}") from e

        if status != 'OK':
            raise FetchError(f"Failed to fetch message {seq}: {data}")
        return data

    def _shutdown_quietly(self) -> None:
        try:
            self.connection.shutdown()
        except OSError:
            pass
        self.connection = None

    def disconnect(self) -> None:
        """
        Close the selected folder, log out and release the connection.
        """
        if self.connection and self.is_connected:
            try:
                if self.selected_folder:
                    try:
                        self.connection.close()
                    except imaplib.IMAP4.error:
                        # CLOSE is illegal once a failed SELECT dropped us back to AUTH
                        pass

                self.connection.logout()
                print("IMAP connection closed successfully")
            except (imaplib.IMAP4.error, OSError) as e:
                print(f"Warning: Error during disconnect: {str(e)}")
            finally:
                self.connection = None
                self.is_connected = False
                self.selected_folder = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()


class ReportWriter:
    """Creates or appends the per-date report file"""

    def __init__(self, output_dir: str = "."):
        """
        Initialize ReportWriter.

        Args:
            output_dir: Directory where report files are stored

        Raises:
            ReportWriteError: If the output directory cannot be created
        """
        self.output_dir = output_dir
        self._ensure_output_directory()

    def _ensure_output_directory(self) -> None:
        try:
            if not os.path.exists(self.output_dir):
                os.makedirs(self.output_dir)
                print(f"Created output directory: {self.output_dir}")
        except OSError as e:
            raise ReportWriteError(f"Failed to create output directory {self.output_dir}: {str(e)}") from e

    def get_report_path(self, target_date: str) -> str:
        """Report filename is the target date without separators, e.g. 20240301.txt"""
        return os.path.join(self.output_dir, f"{target_date.replace('-', '')}.txt")

    @staticmethod
    def sort_records(records: Sequence[MessageRecord]) -> List[MessageRecord]:
        # sorted() is stable: equal timestamps keep fetch order
        return sorted(records, key=lambda record: record.date)

    @staticmethod
    def format_record(record: MessageRecord) -> str:
        """
        Render one record as a report block.

        Args:
            record: Record to render

        Returns:
            str: Block text ending with a blank line
        """
        lines = [
            REPORT_SEPARATOR,
            "",
            f"Mail Type: {record.mail_type.value}",
            f"Sender address: {record.from_address}",
            f"Sender name: {record.from_name}",
            f"Receiver address: {record.to_address}",
            f"Receiver name: {record.to_name}",
            f"Date: {record.date.strftime(REPORT_DATE_FORMAT)}",
        ]
        for number, attachment in enumerate(record.attachments, 1):
            lines.append(f"Attached file{number} name: {attachment.filename}")
        lines.append(f"Content: {record.content}")
        lines.append("")
        return "\n".join(lines) + "\n"

    def write(self, records: Sequence[MessageRecord], target_date: str) -> str:
        """
        Append sorted records to the report of the target date.

        The file is created when missing and appended otherwise; existing content
        is never rewritten.

        Args:
            records: Records of one run
            target_date: Date in YYYY-MM-DD form

        Returns:
            str: Path of the report file

        Raises:
            ReportWriteError: If the file cannot be created or written
        """
        report_path = self.get_report_path(target_date)

        if os.path.exists(report_path):
            print(f"Appending to existing file {report_path}...")
        else:
            print(f"Creating new file {report_path}...")

        try:
            with open(report_path, 'a', encoding='utf-8', newline='\n') as file_handle:
                for record in self.sort_records(records):
                    file_handle.write(self.format_record(record))
                file_handle.flush()
        except OSError as e:
            raise ReportWriteError(f"Failed to write report file {report_path}: {str(e)}") from e

        print(f"Finished writing {len(records)} entries to file {report_path}.")
        return report_path


class ProgressTracker:
    """Maps per-message fetch increments onto the overall [0, 1] progress of a run"""

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.callback = callback
        self.fraction = 0.0
        self.base = 0.0
        self.share = 1.0
        self.status = ""

    def start_segment(self, base: float, share: float, status: str) -> None:
        self.base = base
        self.share = share
        self.status = status
        self.fraction = max(self.fraction, base)
        self._emit()

    def advance(self, increment: float) -> None:
        self.fraction = min(self.base + self.share, self.fraction + increment * self.share, 1.0)
        self._emit()

    def report(self, status: str) -> None:
        self.status = status
        self._emit()

    def finish(self, status: str = "Done") -> None:
        self.fraction = 1.0
        self.status = status
        self._emit()

    def _emit(self) -> None:
        if self.callback:
            self.callback(self.fraction, self.status)


@dataclass
class RunResult:
    """Outcome of processing one account for one date"""
    account: str
    target_date: str
    records: List[MessageRecord]
    report_path: Optional[str]
    stats: ProcessingStats
    warnings: List[str] = field(default_factory=list)


def validate_target_date(target_date: str) -> str:
    """
    Check a target date is a real YYYY-MM-DD date.

    Raises:
        ValueError: If the date is malformed
    """
    if not isinstance(target_date, str) or not re.fullmatch(r"\d{4}-\d{2}-\d{2}", target_date):
        raise ValueError(f"Invalid date '{target_date}', expected YYYY-MM-DD")
    datetime.datetime.strptime(target_date, TARGET_DATE_FORMAT)
    return target_date


class ReportPipeline:
    """Runs authenticate -> received folder -> sent folder -> report for an account"""

    def __init__(self, config: ReportConfig,
                 progress: Optional[ProgressCallback] = None,
                 content_processor: Optional[ContentProcessor] = None,
                 report_writer: Optional[ReportWriter] = None,
                 connection_factory=IMAPConnectionManager):
        self.config = config
        self.progress = progress
        self.content_processor = content_processor or ContentProcessor()
        self.report_writer = report_writer
        self.connection_factory = connection_factory
        self._executor: Optional[ThreadPoolExecutor] = None

    def get_report_writer(self) -> ReportWriter:
        if self.report_writer is None:
            self.report_writer = ReportWriter(self.config.output_dir)
        return self.report_writer

    def run(self, credentials: Credentials, target_date: str) -> RunResult:
        """
        Build the report of one account for one date.

        A folder that cannot be selected is skipped; a fetch failure stops the
        rest of that folder's window but keeps the records collected so far.
        Whatever was collected is written to the report file.

        Args:
            credentials: Account to process
            target_date: Date in YYYY-MM-DD form

        Returns:
            RunResult: Records, report path, statistics and warnings

        Raises:
            ValueError: If target_date is malformed
            AuthError: If the session cannot be opened
            ReportWriteError: If the report cannot be written
        """
        validate_target_date(target_date)

        stats = ProcessingStats()
        stats.start_processing()
        tracker = ProgressTracker(self.progress)
        mailbox_filter = MailboxFilter(target_date, credentials.email, self.config.filter_keywords)
        records: List[MessageRecord] = []
        warnings: List[str] = []

        print(f"Processing emails for {credentials.email} on {target_date}")

        folders = [
            (self.config.inbox_folder, "received"),
            (self.config.sent_folder, "sent"),
        ]

        try:
            with self.connection_factory(self.config, credentials) as imap_manager:
                imap_manager.connect()

                for index, (folder, label) in enumerate(folders):
                    tracker.start_segment(index / len(folders), 1.0 / len(folders),
                                          f"Fetching {label} emails for {credentials.email}...")
                    try:
                        self.process_folder(imap_manager, folder, mailbox_filter, tracker,
                                            records, stats, warnings)
                    except FolderError as e:
                        print(f"Warning: {str(e)} - skipping folder")
                        stats.increment_error_type('folder')
                        warnings.append(str(e))
                    except FetchError as e:
                        print(f"Error: {str(e)} - remaining messages in '{folder}' skipped")
                        stats.increment_error_type('fetch')
                        warnings.append(str(e))

            tracker.report(f"Writing report for {credentials.email}...")
            try:
                report_path = self.get_report_writer().write(records, target_date)
            except ReportWriteError:
                stats.increment_error_type('output')
                raise
        except MailReportError as e:
            stats.end_processing()
            tracker.report(f"Error: {str(e)}")
            raise

        stats.end_processing()
        tracker.finish("Done")
        print(f"\nEmail processing completed for {credentials.email}!")
        print(stats.get_summary())

        return RunResult(
            account=credentials.email,
            target_date=target_date,
            records=ReportWriter.sort_records(records),
            report_path=report_path,
            stats=stats,
            warnings=warnings,
        )

    def process_folder(self, imap_manager: IMAPConnectionManager, folder: str,
                       mailbox_filter: MailboxFilter, tracker: ProgressTracker,
                       records: List[MessageRecord], stats: ProcessingStats,
                       warnings: List[str]) -> None:
        """
        Filter and decode the fetch window of one folder into records.

        Records are appended to the given list as they are built so a later
        fetch failure does not lose them.
        """
        print(f"Fetching {folder} messages...")
        interval = max(1, self.config.progress_interval)

        messages = imap_manager.fetch(folder, want_body=mailbox_filter.accept, on_progress=tracker.advance)
        for raw in messages:
            stats.total_scanned += 1

            if not mailbox_filter.matches_date(raw.envelope):
                stats.skipped_date += 1
            elif mailbox_filter.is_excluded_sender(raw.envelope.from_address):
                stats.skipped_keyword += 1
            else:
                records.append(self.build_record(raw, folder, mailbox_filter, stats, warnings))
                stats.retained += 1

            if stats.total_scanned % interval == 0:
                print(f"Progress: {stats.get_quick_stats()}")

        print(f"Finished processing {folder} messages.")

    def build_record(self, raw: RawMessage, folder: str, mailbox_filter: MailboxFilter,
                     stats: ProcessingStats, warnings: List[str]) -> MessageRecord:
        """Decode an accepted message into a MessageRecord, keeping decode warnings"""
        decoded = self.content_processor.decode_message(raw.body or b"")

        for warning in decoded.warnings:
            message = f"Message {raw.uid or raw.seq} in '{folder}': {warning}"
            print(f"Warning: {message}")
            stats.decode_warnings += 1
            warnings.append(message)

        envelope = raw.envelope
        return MessageRecord(
            date=envelope.date,
            from_address=envelope.from_address,
            from_name=envelope.from_name,
            to_address=envelope.to_address,
            to_name=envelope.to_name,
            content=decoded.text,
            attachments=tuple(decoded.attachments),
            mail_type=mailbox_filter.classify(envelope.from_address),
            uid=raw.uid,
            folder=folder,
        )

    def run_accounts(self, accounts: Sequence[Credentials], target_date: str) -> List[RunResult]:
        """
        Process accounts one after another, stopping at the first fatal error.

        Raises:
            MailReportError: The first fatal error encountered
        """
        results = []
        for account in accounts:
            results.append(self.run(account, target_date))
        return results

    def submit(self, credentials: Credentials, target_date: str) -> "Future[RunResult]":
        """
        Run the pipeline on the background worker.

        A single worker serializes runs, so two runs never append to the same
        report file at once.
        """
        return self._get_executor().submit(self.run, credentials, target_date)

    def submit_accounts(self, accounts: Sequence[Credentials], target_date: str) -> "Future[List[RunResult]]":
        """Run run_accounts on the background worker"""
        return self._get_executor().submit(self.run_accounts, accounts, target_date)

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mail-report")
        return self._executor

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


class ConsoleProgress:
    """Prints progress lines when the status changes or every 10%"""

    def __init__(self, step: float = 0.1):
        self.step = step
        self.last_status: Optional[str] = None
        self.last_bucket = -1

    def __call__(self, fraction: float, status: str) -> None:
        bucket = int(fraction / self.step) if self.step > 0 else 0
        if status != self.last_status or bucket != self.last_bucket:
            print(f"[{fraction * 100:5.1f}%] {status}")
            self.last_status = status
            self.last_bucket = bucket


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Write the mail of a given day to a YYYYMMDD.txt report.')
    parser.add_argument('--date', required=True, help='Date to report on (YYYY-MM-DD).')
    parser.add_argument('--credentials', help='JSON file with a list of {"email", "password"} accounts.')
    parser.add_argument('--output-dir', help='Directory for report files (default: OUTPUT_DIR or current directory).')
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point for the Daily Mail Report Script"""
    args = parse_args(argv)

    print("=" * 80)
    print("DAILY MAIL REPORT")
    print("=" * 80)

    script_start_time = datetime.datetime.now()

    try:
        print("\n[1/4] Configuration")
        print("-" * 40)
        validate_target_date(args.date)
        config = ReportConfig()
        config.load_environment()
        if args.output_dir:
            config.output_dir = args.output_dir
        if args.credentials:
            config.credentials_file = args.credentials

        print(f"\n[2/4] Accounts")
        print("-" * 40)
        accounts = config.load_accounts()
        for account in accounts:
            print(f"  - {account.email}")

        print(f"\n[3/4] Email Processing")
        print("-" * 40)
        print(f"Target date: {args.date}")
        print(f"Fetch window: last {config.fetch_window} messages per folder")

        with ReportPipeline(config, progress=ConsoleProgress()) as pipeline:
            results = pipeline.submit_accounts(accounts, args.date).result()

        print(f"\n[4/4] Final Summary")
        print("-" * 40)
        total_duration = datetime.datetime.now() - script_start_time
        print(f"Total script execution time: {int(total_duration.total_seconds())}s")

        for result in results:
            print(f"{result.account}: {len(result.records)} emails written to {result.report_path}")
            if result.warnings:
                print(f"⚠ Note: {len(result.warnings)} warnings occurred for {result.account}")

        print("=" * 80)

    except KeyboardInterrupt:
        print("\n" + "=" * 80)
        print("Script interrupted by user (Ctrl+C)")
        print("=" * 80)
        sys.exit(0)
    except (MailReportError, ValueError) as e:
        print("\n" + "=" * 80)
        print(f"Error: {str(e)}")
        print("=" * 80)
        sys.exit(1)


if __name__ == "__main__":
    main()
