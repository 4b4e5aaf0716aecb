import os
import threading
from typing import Any, Dict

import redis
from loguru import logger

from pipeline.harness import StageAgent, StartupError, run_stage, utc_now
from pipeline.state import RawEmail
from tools.bus import EMAIL_CHANNEL, LEAD_CHANNEL, ChannelBus, channel_name
from tools.idempotency import Idem
from tools.llm import LLMClient, LLMError
from tools.mail import GmailTransport, MailError


def classify(llm: LLMClient, subject: str, body: str) -> str:
    """Lead or inquiry; classification failures count as inquiries."""
    try:
        return llm.classify_email(subject, body)
    except LLMError as e:
        logger.error(f"Error classifying email, treating as inquiry: {e}")
        return "inquiry"


def route_email(bus: ChannelBus, customer_id: str, email: RawEmail) -> str:
    """Publish an email to the lead or inquiry channel. Returns the channel used."""
    base = LEAD_CHANNEL if email.type == "lead" else EMAIL_CHANNEL
    channel = channel_name(base, customer_id)
    bus.publish(channel, email.model_dump(mode="json", exclude_none=True))
    return channel


class IngestAgent(StageAgent):
    """Polls the customer's inbox and feeds new email into the pipeline."""

    name = "ingest"

    def setup(self) -> None:
        credentials = self.config.credentials.get("gmail")
        if not credentials:
            raise StartupError(f"No Gmail credentials found for customer {self.customer_id}")
        try:
            self.mail = GmailTransport(credentials)
        except MailError as e:
            raise StartupError(str(e)) from e

        self.llm = LLMClient()
        self.idem = Idem(client=self.bus.r, prefix=f"ingest:{self.customer_id}")
        self.poll_interval = float(os.getenv("EMAIL_POLL_INTERVAL", "60"))
        self.max_results = int(os.getenv("EMAIL_MAX_RESULTS", "5"))
        self._stop_event = threading.Event()

    def poll_once(self) -> int:
        """Fetch unread mail once. Returns how many emails were published."""
        try:
            messages = self.mail.list_unread(max_results=self.max_results)
        except MailError as e:
            self.log.error(f"Error fetching emails: {e}")
            return 0

        if not messages:
            self.log.info("No unread emails found")
            return 0

        return sum(1 for message in messages if self.ingest(message))

    def ingest(self, message: Dict[str, Any]) -> bool:
        message_id = message.get("id")
        if not self.idem.check_and_set(message_id):
            self.log.warning(f"Email {message_id} already published, marking read")
            self._mark_read(message_id)
            return False

        email_type = classify(self.llm, message.get("subject", ""), message.get("body", ""))
        email = RawEmail(
            customer_id=self.customer_id,
            message_id=message_id,
            sender=message.get("sender") or "Unknown",
            subject=message.get("subject") or "No Subject",
            body=message.get("body") or "No Content",
            type=email_type,
            received_at=utc_now(),
        )

        try:
            channel = route_email(self.bus, self.customer_id, email)
        except redis.RedisError as e:
            self.log.error(f"Publishing email {message_id} failed, will retry next poll: {e}")
            self.idem.clear_key(message_id)
            return False

        self._mark_read(message_id)
        self.log.info(f"{email_type.upper()} {message_id} published to {channel}")
        return True

    def _mark_read(self, message_id: str) -> None:
        try:
            self.mail.mark_read(message_id)
        except MailError as e:
            self.log.warning(f"{e}")

    def run(self) -> None:
        self.log.info(f"Email agent for customer {self.customer_id} is running")
        while not self._stop_event.is_set():
            self.poll_once()
            self._stop_event.wait(self.poll_interval)

    def stop(self) -> None:
        self._stop_event.set()
        super().stop()


if __name__ == "__main__":
    run_stage(IngestAgent)
