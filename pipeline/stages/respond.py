from typing import Any, Dict, Optional, Tuple

from pipeline.harness import StageAgent, StartupError, run_stage
from pipeline.state import DecisionEnvelope, DecisionStatus
from tools.bus import DECISION_CHANNEL
from tools.mail import GmailTransport, MailError

STATUS_OPENERS = {
    DecisionStatus.APPROVED: "We are pleased to confirm that your order has been approved.",
    DecisionStatus.REJECTED: "Unfortunately we are unable to fulfil your order as requested.",
    DecisionStatus.NEEDS_CLARIFICATION: "Your order needs further review before we can confirm it.",
}


def compose_order_email(envelope: DecisionEnvelope, company: Optional[str] = None) -> Tuple[str, str]:
    """Subject and plain-text body of the reply for a decided order."""
    decision = envelope.decision_result
    pricing = decision.context.pricing
    customer = decision.context.customer

    subject = f"Order {decision.status.value}: {envelope.product_name}"

    lines = [
        f"Dear {customer.name or 'Customer'},",
        "",
        STATUS_OPENERS[decision.status],
        "",
        "Order Details:",
        f"- Product: {envelope.product_name}",
        f"- Quantity: {pricing.pricing_details.quantity}",
        f"- Delivery Date: {envelope.delivery_date or 'Not specified'}",
        f"- Delivery Location: {decision.context.delivery.requested_location or 'Not specified'}",
        "",
        "Pricing:",
        f"- Unit Price: ${pricing.pricing_details.unit_price:,.2f}",
        f"- Subtotal: ${pricing.subtotal:,.2f}",
        f"- Shipping ({pricing.pricing_details.shipping_type}): ${pricing.shipping_cost:,.2f}",
        f"- Total: ${pricing.total_cost:,.2f}",
    ]

    if decision.reasoning:
        lines += ["", "Notes:"] + [f"- {reason}" for reason in decision.reasoning]

    if decision.alternatives:
        lines += ["", "Options:"] + [f"- {alt.suggestion}" for alt in decision.alternatives]

    lines += ["", "Best regards,", company or "Sales Team"]
    return subject, "\n".join(lines)


class RespondAgent(StageAgent):
    """Emails the decision back to the customer who placed the order."""

    name = "respond"
    input_channel = DECISION_CHANNEL
    input_model = DecisionEnvelope

    def setup(self) -> None:
        credentials = self.config.credentials.get("gmail")
        if not credentials:
            raise StartupError(f"No Gmail credentials found for customer {self.customer_id}")
        try:
            self.mail = GmailTransport(credentials)
        except MailError as e:
            raise StartupError(str(e)) from e

        gmail_settings = self.config.notification_settings.get("gmail", {})
        self.sender = gmail_settings.get("from_address")
        self.company = self.config.business_details.get("company_name")

    def transform(self, envelope: DecisionEnvelope, inbound: Dict[str, Any]) -> None:
        recipient = envelope.decision_result.context.customer.email
        if not recipient:
            raise ValueError("Recipient email not found in decision data")

        subject, body = compose_order_email(envelope, self.company)
        self.mail.send(recipient, subject, body, sender=self.sender)
        self.log.info(f"Sent {envelope.decision_result.status.value} response for {envelope.product_name}")
        return None


if __name__ == "__main__":
    run_stage(RespondAgent)
