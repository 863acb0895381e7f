#!/usr/bin/env python3
"""
Content Processor Module

Handles message body extraction for the Daily Mail Report tool.
Walks MIME part trees, picks the best-effort text body (plain text wins over HTML),
records attachment filenames and reduces HTML bodies to a single line of plain text.
"""

import email
import email.message
import email.policy
import re
from dataclasses import dataclass, field
from email.header import decode_header, make_header
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup


HTML_SPAN_PATTERN = re.compile(r"<html[^>]*>.*?</html>", re.IGNORECASE | re.DOTALL)
BODY_SPAN_PATTERN = re.compile(r"<body[^>]*>.*?</body>", re.IGNORECASE | re.DOTALL)
URL_PATTERN = re.compile(r"https?://\S+")
WHITESPACE_RUN_PATTERN = re.compile(r"\s{2,}")


@dataclass(frozen=True)
class AttachmentInfo:
    """Attachment metadata recorded in the report (content is discarded)"""
    filename: str
    size: Optional[int] = None


@dataclass
class DecodedBody:
    """Result of decoding one message: body text, attachments and per-part warnings"""
    text: str = ""
    attachments: List[AttachmentInfo] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


class DecodeError(ValueError):
    """Raised when a single MIME part cannot be decoded"""


class ContentProcessor:
    """Handles MIME decoding and HTML content extraction"""

    def __init__(self, fallback_charset: str = "utf-8"):
        self.fallback_charset = fallback_charset

    def decode_message(self, raw_message: bytes) -> DecodedBody:
        """
        Decode a raw RFC 822 message into a body text and attachment list.

        Parts are visited in source order. The first non-empty inline text/plain
        part is authoritative; an inline text/html part is only used while no
        plain text body has been found. A part that fails to decode is skipped
        and recorded as a warning instead of aborting the message.

        Args:
            raw_message: Full message bytes as returned by BODY[]

        Returns:
            DecodedBody: Body text, attachments and decode warnings
        """
        result = DecodedBody()

        if not raw_message:
            return result

        try:
            message = email.message_from_bytes(raw_message, policy=email.policy.default)
        except Exception as e:
            result.warnings.append(f"Unparseable message: {str(e)}")
            return result

        plain_found = False

        for index, part in enumerate(message.walk()):
            if part.is_multipart():
                continue

            try:
                if self.is_attachment(part):
                    filename = self.decode_filename(part)
                    result.attachments.append(AttachmentInfo(filename=filename))
                    continue

                content_type = part.get_content_type()
                if content_type not in ("text/plain", "text/html"):
                    continue

                text, warning = self.decode_text_payload(part)
                if warning:
                    result.warnings.append(f"Part {index}: {warning}")

                if content_type == "text/plain":
                    if not plain_found:
                        normalized = self.normalize_whitespace(text)
                        # An empty plain part leaves room for the HTML alternative
                        if normalized:
                            result.text = normalized
                            plain_found = True
                elif not plain_found and not result.text:
                    result.text = self.extract_plain_text(text)

            except DecodeError as e:
                result.warnings.append(f"Part {index}: {str(e)}")
                continue
            except Exception as e:
                result.warnings.append(f"Part {index}: unexpected decode failure: {str(e)}")
                continue

        return result

    def is_attachment(self, part: email.message.Message) -> bool:
        """
        Classify a leaf part as attachment or inline content.

        Args:
            part: Leaf MIME part

        Returns:
            bool: True when the part is a file to download rather than content to display
        """
        disposition = (part.get_content_disposition() or "").lower()
        if disposition == "attachment":
            return True
        if disposition == "inline":
            return False

        # No disposition: a named non-text part is still a file
        return bool(part.get_filename()) and part.get_content_maintype() != "text"

    def decode_filename(self, part: email.message.Message) -> str:
        """
        Decode an attachment filename from its RFC 2047 / RFC 2231 form.

        Args:
            part: Attachment part

        Returns:
            str: Decoded filename, empty when the part carries none
        """
        try:
            filename = part.get_filename()
        except Exception as e:
            raise DecodeError(f"invalid attachment filename: {str(e)}")

        if not filename:
            return ""

        if "=?" in filename:
            try:
                filename = str(make_header(decode_header(filename)))
            except Exception:
                # Keep the raw encoded-word when it is malformed
                pass

        return filename

    def decode_text_payload(self, part: email.message.Message) -> Tuple[str, Optional[str]]:
        """
        Decode a text part's transfer encoding and charset to a str.

        Unknown or wrong charsets are transcoded through the fallback charset with
        replacement characters.

        Args:
            part: Leaf text part

        Returns:
            tuple: (text, warning or None)

        Raises:
            DecodeError: If the payload cannot be retrieved at all
        """
        try:
            payload = part.get_payload(decode=True)
        except Exception as e:
            raise DecodeError(f"cannot decode {part.get_content_type()} payload: {str(e)}")

        if payload is None:
            return "", None

        if isinstance(payload, str):
            return payload, None

        charset = part.get_content_charset() or self.fallback_charset
        try:
            return payload.decode(charset), None
        except LookupError:
            warning = f"unknown charset '{charset}', decoded as {self.fallback_charset}"
        except UnicodeDecodeError:
            warning = f"invalid {charset} bytes, decoded as {self.fallback_charset}"

        return payload.decode(self.fallback_charset, errors="replace"), warning

    def extract_plain_text(self, html_content: Optional[str]) -> str:
        """
        Reduce an HTML document to a single line of plain text.

        Only the first <body> inside the first <html> span is considered. Tags,
        script/style content and http(s) links are removed, remaining URL tokens
        are dropped and whitespace is collapsed.

        Args:
            html_content: Full HTML document

        Returns:
            str: Extracted text, empty when the document has no html/body span
        """
        if not html_content:
            return ""

        html_match = HTML_SPAN_PATTERN.search(html_content)
        if not html_match:
            return ""

        body_match = BODY_SPAN_PATTERN.search(html_match.group(0))
        if not body_match:
            return ""

        text_content = self.strip_tags(body_match.group(0))
        text_content = self.remove_urls(text_content)
        return self.normalize_whitespace(text_content)

    def strip_tags(self, html_fragment: str) -> str:
        """
        Remove markup from an HTML fragment, keeping text nodes.

        Args:
            html_fragment: HTML to strip

        Returns:
            str: Text content of the fragment
        """
        soup = BeautifulSoup(html_fragment, "html.parser")

        for element in soup(["script", "style"]):
            element.decompose()

        # Link labels go together with their tracking URLs
        for anchor in soup.find_all("a", href=URL_PATTERN):
            anchor.decompose()

        return soup.get_text()

    def remove_urls(self, content: str) -> str:
        """Drop whitespace-delimited http:// and https:// tokens"""
        return URL_PATTERN.sub("", content)

    def normalize_whitespace(self, content: str) -> str:
        """
        Collapse newlines and whitespace runs into single spaces.

        Args:
            content: Content to normalize

        Returns:
            str: Single-line content without leading/trailing whitespace
        """
        if not content:
            return ""

        content = content.replace("\r", " ").replace("\n", " ")
        content = WHITESPACE_RUN_PATTERN.sub(" ", content)
        return content.strip()
