import json
import os
import sys
from unittest.mock import MagicMock, patch

import pytest
import redis

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pipeline.harness import StartupError
from pipeline.stages.decide import DecideAgent
from pipeline.stages.ingest import IngestAgent
from pipeline.stages.inventory import InventoryAgent
from pipeline.stages.lead_analyze import LeadAnalyzeAgent
from pipeline.stages.lead_notify import LeadNotifyAgent, compose_lead_email
from pipeline.stages.lead_score import LeadScoreAgent
from pipeline.stages.parse import ParseAgent, business_context, sender_address, sender_details
from pipeline.stages.price import PriceAgent
from pipeline.stages.respond import RespondAgent, compose_order_email
from pipeline.state import CustomerConfig, DecisionEnvelope, InventoryStatus, ScoredLead
from tools.mail import MailError

GMAIL = {"client_id": "id", "client_secret": "secret", "refresh_token": "token"}

CONFIG = CustomerConfig(
    customer_id="ACME01",
    credentials={"gmail": GMAIL},
    data_sources={"inventory": {
        "type": "NoSQL", "platform": "MongoDB",
        "connection_string": "mongodb://localhost/inventory", "inventory_source": "products",
    }},
    notification_settings={"gmail": {"sales_team_email": "sales@acme.com"}, "slack": {"channel": "#hot"}},
    business_details={"business_description": "Industrial widgets", "special_instructions": "Quote in USD"},
)

INVENTORY = {
    "quantity_available": 100,
    "warehouse_location": "Austin, TX",
    "unit_price": 12.5,
    "shipping_price": {"local": 50, "regional": 150},
    "status": "Available",
}


def published(bus):
    """(channel, payload) of the single publish call."""
    bus.publish.assert_called_once()
    return bus.publish.call_args[0]


def run_price(request):
    bus = MagicMock()
    PriceAgent("ACME01", CONFIG, bus).handle(json.dumps(request))
    return published(bus)


def run_decide(priced, config=CONFIG):
    bus = MagicMock()
    agent = DecideAgent("ACME01", config, bus)
    agent.setup()
    agent.handle(json.dumps(priced))
    return published(bus)


class TestIngestAgent:
    """Mailbox polling, classification and exactly-once publishing."""

    def setup_method(self):
        self.bus = MagicMock()
        self.agent = IngestAgent("ACME01", CONFIG, self.bus)
        with patch("pipeline.stages.ingest.GmailTransport") as transport, \
             patch("pipeline.stages.ingest.LLMClient") as llm:
            self.agent.setup()
        self.mail = transport.return_value
        self.llm = llm.return_value
        self.bus.r.set.return_value = True
        self.message = {"id": "m-1", "sender": "Jane <jane@acme.com>", "subject": "Quote", "body": "50 units"}

    def test_missing_credentials(self):
        agent = IngestAgent("ACME01", CustomerConfig(customer_id="ACME01"), self.bus)
        with pytest.raises(StartupError, match="No Gmail credentials"):
            agent.setup()

    def test_inquiry_published_and_marked_read(self):
        self.llm.classify_email.return_value = "inquiry"

        assert self.agent.ingest(self.message) is True

        channel, payload = published(self.bus)
        assert channel == "email_channel_ACME01"
        assert payload["message_id"] == "m-1"
        assert payload["type"] == "inquiry"
        assert payload["customer_id"] == "ACME01"
        self.mail.mark_read.assert_called_once_with("m-1")

    def test_lead_goes_to_lead_channel(self):
        self.llm.classify_email.return_value = "lead"

        self.agent.ingest(self.message)

        assert published(self.bus)[0] == "lead_channel_ACME01"

    def test_duplicate_only_marked_read(self):
        self.bus.r.set.return_value = None

        assert self.agent.ingest(self.message) is False

        self.bus.publish.assert_not_called()
        self.mail.mark_read.assert_called_once_with("m-1")

    def test_publish_failure_clears_key(self):
        self.llm.classify_email.return_value = "inquiry"
        self.bus.publish.side_effect = redis.ConnectionError("down")

        assert self.agent.ingest(self.message) is False

        self.bus.r.delete.assert_called_once_with("ingest:ACME01:m-1")
        self.mail.mark_read.assert_not_called()

    def test_poll_once(self):
        self.mail.list_unread.return_value = [self.message, {**self.message, "id": "m-2"}]
        self.llm.classify_email.return_value = "inquiry"

        assert self.agent.poll_once() == 2
        self.mail.list_unread.assert_called_once_with(max_results=5)

    def test_poll_failure(self):
        self.mail.list_unread.side_effect = MailError("quota")
        assert self.agent.poll_once() == 0

    def test_run_until_stopped(self):
        self.agent.poll_interval = 0
        self.mail.list_unread.side_effect = lambda **kwargs: self.agent.stop() or []

        self.agent.run()

        self.mail.list_unread.assert_called_once()
        self.bus.stop.assert_called_once()


class TestParseAgent:
    """Inquiry email to structured order request."""

    def setup_method(self):
        self.bus = MagicMock()
        self.agent = ParseAgent("ACME01", CONFIG, self.bus)
        self.agent.llm = MagicMock()
        self.agent.context = business_context(CONFIG.business_details)
        self.email = {
            "customer_id": "ACME01",
            "message_id": "m-1",
            "sender": "Jane Doe <jane@acme.com>",
            "subject": "Quote request",
            "body": "Hi,\nWe need 50 units of Widget A.\n\nBest regards,\nJane Smith\nAcme Corp",
            "type": "inquiry",
        }

    def test_sender_helpers(self):
        assert sender_address("Jane Doe <jane@acme.com>") == "jane@acme.com"
        assert sender_address("jane@acme.com") == "jane@acme.com"
        assert sender_details("Jane Doe <jane@acme.com>", self.email["body"]) == ("Jane Smith", "Acme Corp")
        assert sender_details("Jane Doe <jane@acme.com>", "No signature") == ("Jane Doe", None)

    def test_business_context(self):
        context = business_context(CONFIG.business_details)

        assert "Business Overview:\nIndustrial widgets" in context
        assert "Special Instructions:\nQuote in USD" in context
        assert business_context({}) == "No business details provided."

    def test_parsed_request_published(self):
        self.agent.llm.extract_order.return_value = {
            "product_name": "Widget A",
            "quantity": "50 units",
            "delivery_date": "March 3rd",
            "delivery_location": "Austin, TX",
            "inquiry_type": "price_request",
        }

        assert self.agent.handle(json.dumps(self.email)) is True

        channel, payload = published(self.bus)
        assert channel == "parsed_email_channel_ACME01"
        assert payload["quantity"] == 50
        assert payload["sender_email"] == "jane@acme.com"
        assert payload["sender_name"] == "Jane Smith"
        assert payload["company_name"] == "Acme Corp"
        assert payload["customer_id"] == "ACME01"
        assert payload["parsed_at"]

    def test_unparseable_quantity_dropped(self):
        self.agent.llm.extract_order.return_value = {"product_name": "Widget A", "quantity": "a few"}

        assert self.agent.handle(json.dumps(self.email)) is False
        self.bus.publish.assert_not_called()


class TestInventoryAgent:
    def setup_method(self):
        self.bus = MagicMock()
        self.agent = InventoryAgent("ACME01", CONFIG, self.bus)
        self.agent.store = MagicMock()
        self.agent.store.check.return_value = InventoryStatus.model_validate(INVENTORY)

    def test_missing_data_source(self):
        agent = InventoryAgent("ACME01", CustomerConfig(customer_id="ACME01"), self.bus)
        with pytest.raises(StartupError, match="No inventory data source"):
            agent.setup()

    def test_inventory_attached_without_touching_inbound_fields(self):
        request = {"customer_id": "ACME01", "product_name": "Widget A", "quantity": "50 units",
                   "delivery_location": "Austin, TX", "sender_email": "jane@acme.com"}

        self.agent.handle(json.dumps(request))

        _, payload = published(self.bus)
        assert payload["quantity"] == "50 units"
        assert payload["inventory_status"]["warehouse_location"] == "Austin, TX"
        assert "is_alternative_location" not in payload["inventory_status"]
        assert payload["checked_at"]
        self.agent.store.check.assert_called_once_with("Widget A", "Austin, TX")

    def test_display_name_fields(self):
        request = {"Product Name": "Widget A", "Quantity": 50, "Delivery Location": "Austin, TX"}

        self.agent.handle(json.dumps(request))

        _, payload = published(self.bus)
        assert payload["Product Name"] == "Widget A"
        assert payload["product_name"] == "Widget A"
        assert payload["quantity"] == 50


class TestPriceAndDecide:
    """Inventory envelope through pricing and the decision rules."""

    def setup_method(self):
        self.request = {
            "customer_id": "ACME01",
            "product_name": "Widget A",
            "quantity": "50 units",
            "delivery_date": "March 3rd",
            "delivery_location": "Austin, TX",
            "sender_name": "Jane Smith",
            "sender_email": "jane@acme.com",
            "company_name": "Acme Corp",
            "inventory_status": INVENTORY,
        }

    def test_pricing_attached(self):
        channel, priced = run_price(self.request)

        assert channel == "pricing_channel_ACME01"
        assert priced["pricing_result"]["total_cost"] == 675
        assert priced["pricing_result"]["pricing_details"]["shipping_type"] == "local"
        assert priced["quantity"] == "50 units"

    def test_approved_decision_carries_context(self):
        _, priced = run_price(self.request)
        channel, decided = run_decide(priced)

        assert channel == "decision_channel_ACME01"
        assert decided["product_name"] == "Widget A"
        assert decided["decision_result"]["status"] == "APPROVED"
        assert decided["decision_result"]["context"]["customer"]["email"] == "jane@acme.com"
        assert decided["decision_result"]["context"]["pricing"]["total_cost"] == 675

    def test_rejected_when_short(self):
        _, priced = run_price({**self.request, "quantity": 150})
        _, decided = run_decide(priced)

        assert decided["decision_result"]["status"] == "REJECTED"
        assert decided["decision_result"]["alternatives"][0]["type"] == "reduced_quantity"

    def test_tenant_threshold(self):
        config = CONFIG.model_copy(update={"decision_rules": {"cost_threshold": 100, "threshold_status": "REJECTED"}})
        _, priced = run_price(self.request)
        _, decided = run_decide(priced, config=config)

        assert decided["decision_result"]["status"] == "REJECTED"

    def test_invalid_rules_fatal(self):
        config = CONFIG.model_copy(update={"decision_rules": {"cost_threshold": "lots"}})
        with pytest.raises(StartupError):
            DecideAgent("ACME01", config, MagicMock()).setup()


class TestRespondAgent:
    def setup_method(self):
        _, priced = run_price({
            "customer_id": "ACME01", "product_name": "Widget A", "quantity": 150,
            "delivery_location": "Austin, TX", "sender_name": "Jane Smith",
            "sender_email": "jane@acme.com", "inventory_status": INVENTORY,
        })
        _, self.decided = run_decide(priced)
        self.bus = MagicMock()
        self.agent = RespondAgent("ACME01", CONFIG, self.bus)
        self.agent.mail = MagicMock()
        self.agent.sender = None
        self.agent.company = "Acme Widgets"

    def test_compose_order_email(self):
        subject, body = compose_order_email(DecisionEnvelope.model_validate(self.decided), "Acme Widgets")

        assert subject == "Order REJECTED: Widget A"
        assert body.startswith("Dear Jane Smith,")
        assert "Insufficient inventory. Requested: 150, Available: 100" in body
        assert "Consider ordering maximum available quantity: 100" in body
        assert "- Total: $2,025.00" in body

    def test_sends_to_customer(self):
        assert self.agent.handle(json.dumps(self.decided)) is True

        to, subject, _ = self.agent.mail.send.call_args[0]
        assert to == "jane@acme.com"
        assert subject == "Order REJECTED: Widget A"
        self.bus.publish.assert_not_called()

    def test_missing_recipient_dropped(self):
        self.decided["decision_result"]["context"]["customer"]["email"] = None

        assert self.agent.handle(json.dumps(self.decided)) is False
        self.agent.mail.send.assert_not_called()

    def test_send_failure_dropped(self):
        self.agent.mail.send.side_effect = MailError("quota exceeded")
        assert self.agent.handle(json.dumps(self.decided)) is False

    def test_missing_credentials(self):
        with pytest.raises(StartupError):
            RespondAgent("ACME01", CustomerConfig(customer_id="ACME01"), self.bus).setup()


class TestLeadBranch:
    """Analyze, score and notify."""

    def setup_method(self):
        self.email = {
            "customer_id": "ACME01",
            "message_id": "m-9",
            "sender": "Bob <bob@distro.com>",
            "subject": "Distribution partnership",
            "body": "We are a distributor with 12 branches and need an annual contract urgently.",
            "type": "lead",
        }
        self.analysis = {"hidden_opportunities": ["Multi-branch rollout"], "urgency_factors": ["urgently"]}
        self.score = {
            "score": "HOT",
            "confidence": 0.85,
            "priority_level": 9,
            "reasons": ["Large multi-location deal"],
            "response_priority": {"timeframe": "Same day", "reason": "Urgent request"},
        }

    def test_analyze_keeps_original_email(self):
        bus = MagicMock()
        agent = LeadAnalyzeAgent("ACME01", CONFIG, bus)
        agent.llm = MagicMock()
        agent.llm.analyze_lead.return_value = self.analysis

        agent.handle(json.dumps(self.email))

        channel, lead = published(bus)
        assert channel == "lead_scoring_channel_ACME01"
        assert lead["original_email"] == self.email
        assert lead["analysis"] == self.analysis

    def test_empty_analysis_dropped(self):
        bus = MagicMock()
        agent = LeadAnalyzeAgent("ACME01", CONFIG, bus)
        agent.llm = MagicMock()
        agent.llm.analyze_lead.return_value = {}

        assert agent.handle(json.dumps(self.email)) is False
        bus.publish.assert_not_called()

    def test_score_attached(self):
        bus = MagicMock()
        agent = LeadScoreAgent("ACME01", CONFIG, bus)
        agent.llm = MagicMock()
        agent.llm.score_lead.return_value = {**self.score, "score": "Hot Lead"}
        lead = {"customer_id": "ACME01", "original_email": self.email, "analysis": self.analysis}

        agent.handle(json.dumps(lead))

        channel, scored = published(bus)
        assert channel == "qualified_leads_channel_ACME01"
        assert scored["score_analysis"]["score"] == "HOT"
        assert scored["analysis"] == self.analysis
        assert scored["original_email"] == self.email

    def test_invalid_score_dropped(self):
        bus = MagicMock()
        agent = LeadScoreAgent("ACME01", CONFIG, bus)
        agent.llm = MagicMock()
        agent.llm.score_lead.return_value = {"score": "MAYBE", "confidence": 3}
        lead = {"customer_id": "ACME01", "original_email": self.email, "analysis": self.analysis}

        assert agent.handle(json.dumps(lead)) is False
        bus.publish.assert_not_called()

    def scored_lead(self, score="HOT"):
        return {
            "customer_id": "ACME01",
            "original_email": self.email,
            "analysis": self.analysis,
            "score_analysis": {**self.score, "score": score},
        }

    def test_compose_lead_email(self):
        subject, body = compose_lead_email(ScoredLead.model_validate(self.scored_lead()))

        assert subject == "[HOT LEAD] Distribution partnership"
        assert "Respond: Same day" in body
        assert "- Multi-branch rollout" in body
        assert body.endswith(self.email["body"])

    def test_notify_hot_lead(self):
        with patch("pipeline.stages.lead_notify.GmailTransport"), \
             patch("pipeline.stages.lead_notify.SlackNotifier"):
            agent = LeadNotifyAgent("ACME01", CONFIG, MagicMock())
            agent.setup()

        assert agent.handle(json.dumps(self.scored_lead())) is True

        to, subject, _ = agent.mail.send.call_args[0]
        assert to == "sales@acme.com"
        assert subject == "[HOT LEAD] Distribution partnership"
        agent.slack.send_lead_alert.assert_called_once()

    def test_notify_cold_lead_skips_slack(self):
        with patch("pipeline.stages.lead_notify.GmailTransport"), \
             patch("pipeline.stages.lead_notify.SlackNotifier"):
            agent = LeadNotifyAgent("ACME01", CONFIG, MagicMock())
            agent.setup()

        agent.handle(json.dumps(self.scored_lead("COLD")))

        agent.mail.send.assert_called_once()
        agent.slack.send_lead_alert.assert_not_called()

    def test_notify_requires_sales_team_email(self):
        config = CONFIG.model_copy(update={"notification_settings": {}})
        with pytest.raises(StartupError, match="sales team email"):
            LeadNotifyAgent("ACME01", config, MagicMock()).setup()

    def test_notify_rejects_incomplete_lead(self):
        agent = LeadNotifyAgent("ACME01", CONFIG, MagicMock())
        agent.mail = MagicMock()
        lead = self.scored_lead()
        del lead["score_analysis"]["response_priority"]

        assert agent.handle(json.dumps(lead)) is False
        agent.mail.send.assert_not_called()
