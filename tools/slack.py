import os
from typing import Any, Dict, List, Optional

from loguru import logger

SCORE_EMOJI = {"HOT": "🔥", "WARM": "✅", "COLD": "📧"}
MAX_REASONS = 3


def _field(label: str, value: Any) -> Dict[str, str]:
    return {"type": "mrkdwn", "text": f"*{label}:*\n{value}"}


class SlackNotifier:
    """Posts scored leads to the sales team's Slack channel."""

    def __init__(self, token: Optional[str] = None, default_channel: Optional[str] = None, client=None):
        self.token = token or os.getenv("SLACK_BOT_TOKEN")
        self.default_channel = default_channel or os.getenv("SLACK_DEFAULT_CHANNEL", "#sales-leads")
        self.client = client

        if self.client is None and self.token:
            from slack_sdk.web import WebClient
            self.client = WebClient(token=self.token)

        if self.client is None:
            logger.warning("No Slack token provided, using mock mode")

    def send_lead_alert(self, lead: Dict[str, Any], channel: Optional[str] = None) -> Optional[str]:
        """
        Post a scored lead.

        Args:
            lead: Scored lead envelope (original_email + score_analysis)
            channel: Slack channel, defaults to the configured one

        Returns:
            Slack message timestamp, or None if the post failed
        """
        if self.client is None:
            logger.info("Mock mode: would send Slack lead alert")
            return "mock_timestamp_123"

        from slack_sdk.errors import SlackApiError

        target_channel = channel or self.default_channel
        text, blocks = self._build_lead_message(lead)

        try:
            response = self.client.chat_postMessage(channel=target_channel, text=text, blocks=blocks)
        except SlackApiError as e:
            logger.error(f"Slack lead alert failed: {e}")
            return None

        logger.info(f"Slack lead alert sent to {target_channel}: {response['ts']}")
        return response["ts"]

    def _build_lead_message(self, lead: Dict[str, Any]):
        """Fallback text and Block Kit blocks for a scored lead."""
        email = lead.get("original_email", {})
        analysis = lead.get("score_analysis", {})
        score = analysis.get("score", "UNKNOWN")
        emoji = SCORE_EMOJI.get(score, "📧")
        sender = email.get("sender", "Unknown")
        subject = email.get("subject", "No subject")

        blocks: List[Dict[str, Any]] = [
            {"type": "header", "text": {"type": "plain_text", "text": f"{emoji} {score} LEAD"}},
            {"type": "section", "fields": [
                _field("From", sender),
                _field("Subject", subject),
                _field("Priority", f"{analysis.get('priority_level', '?')}/10"),
                _field("Respond", analysis.get("response_priority", {}).get("timeframe", "Not specified")),
            ]},
        ]

        reasons = (analysis.get("reasons") or [])[:MAX_REASONS]
        if reasons:
            bullets = "\n".join(f"• {reason}" for reason in reasons)
            blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": f"*Why:*\n{bullets}"}})

        return f"{emoji} {score} lead from {sender}: {subject}", blocks
