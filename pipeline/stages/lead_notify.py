from typing import Any, Dict, Tuple

from pipeline.harness import StageAgent, StartupError, run_stage
from pipeline.state import ScoredLead
from tools.bus import QUALIFIED_LEADS_CHANNEL
from tools.mail import GmailTransport, MailError
from tools.slack import SlackNotifier


def compose_lead_email(lead: ScoredLead) -> Tuple[str, str]:
    """Subject and body of the sales-team notification for a scored lead."""
    email = lead.original_email
    score = lead.score_analysis
    components = score.analysis_components

    subject = f"[{score.score} LEAD] {email.subject}"

    def section(title, items):
        if not items:
            return []
        return ["", f"{title}:"] + [f"- {item}" for item in items]

    lines = [
        f"Lead score: {score.score} (priority {score.priority_level}/10, confidence {score.confidence:.0%})",
        f"Respond: {score.response_priority.timeframe}",
    ]
    if score.response_priority.reason:
        lines.append(f"Why: {score.response_priority.reason}")

    lines += ["", f"From: {email.sender}", f"Subject: {email.subject}"]
    lines += section("Reasons", score.reasons)
    lines += section("Recommended actions", score.recommended_actions)
    lines += section("Key strengths", score.key_strengths)
    lines += section("Hidden opportunities", components.hidden_opportunities)
    lines += section("Unstated needs", components.unstated_needs)
    lines += section("Potential risks", components.potential_risks)
    lines += section("Urgency factors", components.urgency_factors)
    if score.follow_up_timeline:
        lines += ["", f"Follow up: {score.follow_up_timeline}"]
    lines += ["", "Original message:", "", email.body]

    return subject, "\n".join(lines)


class LeadNotifyAgent(StageAgent):
    """Forwards scored leads to the customer's sales team."""

    name = "lead_notify"
    input_channel = QUALIFIED_LEADS_CHANNEL
    input_model = ScoredLead

    def setup(self) -> None:
        credentials = self.config.credentials.get("gmail")
        if not credentials:
            raise StartupError(f"No Gmail credentials found for customer {self.customer_id}")

        gmail_settings = self.config.notification_settings.get("gmail", {})
        self.sales_team_email = gmail_settings.get("sales_team_email")
        if not self.sales_team_email:
            raise StartupError(f"No sales team email configured for customer {self.customer_id}")
        self.sender = gmail_settings.get("from_address")

        try:
            self.mail = GmailTransport(credentials)
        except MailError as e:
            raise StartupError(str(e)) from e

        self.slack = SlackNotifier(
            token=self.config.credentials.get("slack", {}).get("bot_token"),
            default_channel=self.config.notification_settings.get("slack", {}).get("channel"),
        )

    def transform(self, lead: ScoredLead, inbound: Dict[str, Any]) -> None:
        subject, body = compose_lead_email(lead)
        self.mail.send(self.sales_team_email, subject, body, sender=self.sender)
        self.log.info(f"Lead notification sent: {subject}")

        if lead.score_analysis.score == "HOT":
            self.slack.send_lead_alert(inbound)
        return None


if __name__ == "__main__":
    run_stage(LeadNotifyAgent)
