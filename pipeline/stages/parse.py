import re
from typing import Any, Dict, Optional, Tuple

from pipeline.harness import StageAgent, run_stage, utc_now
from pipeline.state import ParsedRequest, RawEmail
from tools.bus import EMAIL_CHANNEL, PARSED_EMAIL_CHANNEL
from tools.llm import LLMClient

SIGN_OFFS = ("Best regards", "Regards", "Thanks")

BUSINESS_SECTIONS = (
    ("business_description", "Business Overview"),
    ("common_inquiries", "Common Inquiries"),
    ("required_information", "Required Information for Processing"),
    ("customer_types", "Customer Types"),
    ("special_instructions", "Special Instructions"),
)

_ADDRESS_RE = re.compile(r"<(.+)>")


def sender_address(sender: str) -> str:
    """Address inside <...> of a From header, else the whole header."""
    match = _ADDRESS_RE.search(sender or "")
    return match.group(1) if match else sender


def sender_details(sender: str, body: str) -> Tuple[str, Optional[str]]:
    """
    (name, company) of the person who wrote the email.

    The signature block wins: the line after the first sign-off line is the
    name, the line after that the company. Without one, the display name of
    the From header is used.
    """
    name = (sender or "").split("<")[0].strip()
    company = None

    lines = [line.strip() for line in (body or "").split("\n")]
    for i, line in enumerate(lines):
        if line.startswith(SIGN_OFFS):
            if i + 1 < len(lines) and lines[i + 1]:
                name = lines[i + 1]
            if i + 2 < len(lines) and lines[i + 2]:
                company = lines[i + 2]
            break
    return name, company


def business_context(details: Dict[str, Any]) -> str:
    """Describe the customer's business for the extraction prompt."""
    sections = [
        f"{title}:\n{details[key]}"
        for key, title in BUSINESS_SECTIONS
        if details.get(key)
    ]
    return "\n\n".join(sections) or "No business details provided."


class ParseAgent(StageAgent):
    """Turns inquiry email into a structured order request."""

    name = "parse"
    input_channel = EMAIL_CHANNEL
    output_channel = PARSED_EMAIL_CHANNEL
    input_model = RawEmail

    def setup(self) -> None:
        self.llm = LLMClient()
        self.context = business_context(self.config.business_details)

    def transform(self, envelope: RawEmail, inbound: Dict[str, Any]) -> Dict[str, Any]:
        extracted = self.llm.extract_order(self.context, envelope.subject, envelope.body)

        name, company = sender_details(envelope.sender, envelope.body)
        request = ParsedRequest.model_validate({
            **extracted,
            "customer_id": self.customer_id,
            "sender_name": name or extracted.get("customer_name"),
            "sender_email": sender_address(envelope.sender),
            "company_name": company or extracted.get("company_name"),
        })
        self.log.info(
            f"Parsed order: {request.quantity} x {request.product_name} "
            f"to {request.delivery_location or 'unspecified location'}"
        )

        return {
            **request.model_dump(mode="json"),
            "message_id": envelope.message_id,
            "subject": envelope.subject,
            "sender": envelope.sender,
            "parsed_at": utc_now(),
        }


if __name__ == "__main__":
    run_stage(ParseAgent)
