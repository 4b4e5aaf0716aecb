import base64
import os
import re
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup
from google.auth.exceptions import GoogleAuthError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from loguru import logger

TOKEN_URI = "https://oauth2.googleapis.com/token"
REQUIRED_CREDENTIALS = ("client_id", "client_secret", "refresh_token")

_FOOTER_RE = re.compile(r"(Unsubscribe|Copyright).*$", re.IGNORECASE | re.DOTALL)


class MailError(Exception):
    """Raised when the mail transport call fails."""


def html_to_text(html: str) -> str:
    """Plain text of an HTML body, without unsubscribe/copyright footers."""
    soup = BeautifulSoup(html, "html.parser")
    root = soup.body or soup
    text = re.sub(r"\s+", " ", root.get_text(" ", strip=True)).strip()
    return _FOOTER_RE.sub("", text).strip()


def _decode_part(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def extract_body(payload: Dict[str, Any]) -> str:
    """Body of a Gmail message payload: first text/plain part, else first text/html part."""
    parts = payload.get("parts")
    if not parts:
        data = payload.get("body", {}).get("data")
        if not data:
            return "No Content"
        text = _decode_part(data)
        if payload.get("mimeType") == "text/html":
            text = html_to_text(text)
        return text or "No Content"

    by_type = {}
    for part in parts:
        data = part.get("body", {}).get("data")
        if data:
            by_type.setdefault(part.get("mimeType"), data)

    if "text/plain" in by_type:
        return _decode_part(by_type["text/plain"]) or "No Content"
    if "text/html" in by_type:
        return html_to_text(_decode_part(by_type["text/html"])) or "No Content"
    return "No Content"


def parse_message(message: Dict[str, Any]) -> Dict[str, Any]:
    """Turn a Gmail API message resource into {id, sender, subject, body}."""
    payload = message.get("payload", {})
    headers = {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers", [])}
    return {
        "id": message.get("id"),
        "sender": headers.get("from") or "Unknown",
        "subject": headers.get("subject") or "No Subject",
        "body": extract_body(payload),
    }


class GmailTransport:
    """Send and fetch email for one customer's Gmail account."""

    def __init__(self, credentials: Dict[str, Any], service=None):
        missing = [key for key in REQUIRED_CREDENTIALS if not credentials.get(key)]
        if missing:
            raise MailError(f"Gmail credentials incomplete, missing: {missing}")

        if service is not None:
            self.service = service
            return

        creds = Credentials(
            token=None,
            refresh_token=credentials["refresh_token"],
            client_id=credentials["client_id"],
            client_secret=credentials["client_secret"],
            token_uri=os.getenv("GOOGLE_TOKEN_URI", TOKEN_URI),
        )
        self.service = build("gmail", "v1", credentials=creds, cache_discovery=False)

    def list_unread(self, max_results: int = 5, query: str = "is:unread category:primary") -> List[Dict[str, Any]]:
        """Fetch unread messages from the primary inbox."""
        try:
            listing = self.service.users().messages().list(
                userId="me", q=query, maxResults=max_results
            ).execute()
            messages = []
            for ref in listing.get("messages", []) or []:
                full = self.service.users().messages().get(userId="me", id=ref["id"]).execute()
                messages.append(parse_message(full))
            return messages
        except (HttpError, GoogleAuthError) as e:
            raise MailError(f"Fetching unread email failed: {e}") from e

    def mark_read(self, message_id: str) -> None:
        try:
            self.service.users().messages().modify(
                userId="me", id=message_id, body={"removeLabelIds": ["UNREAD"]}
            ).execute()
        except (HttpError, GoogleAuthError) as e:
            raise MailError(f"Marking {message_id} read failed: {e}") from e

    def send(self, to: str, subject: str, body: str, sender: Optional[str] = None) -> str:
        """
        Send a plain-text email.

        Returns:
            Gmail id of the sent message
        """
        mime = MIMEText(body, "plain", "utf-8")
        mime["To"] = to
        mime["Subject"] = subject
        if sender:
            mime["From"] = sender
        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii")

        try:
            sent = self.service.users().messages().send(userId="me", body={"raw": raw}).execute()
        except (HttpError, GoogleAuthError) as e:
            raise MailError(f"Sending email to {to} failed: {e}") from e

        logger.info(f"Email sent: {sent.get('id')}")
        return sent.get("id", "")
