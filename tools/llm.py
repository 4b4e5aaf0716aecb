import os
import re
import json
from typing import Dict, Any, Optional
from loguru import logger

LEAD_KEYWORDS = (
    "distributor", "reseller", "partnership", "partner", "annual", "contract",
    "multiple locations", "branches", "wholesale", "white-label", "exclusive",
    "long-term", "preferred supplier", "franchise",
)
URGENT_KEYWORDS = ("urgent", "asap", "immediately", "emergency", "deadline", "today")

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_JSON_TAG_RE = re.compile(r"^\s*JSON\s*", re.IGNORECASE)

# Mock-mode extraction patterns
_UNITS = r"(?:units?|bags?|pieces?|pcs|tons?|boxes|pallets?)"
_QUANTITY_RE = re.compile(rf"(\d+(?:,\d{{3}})*)\s*({_UNITS})\b", re.IGNORECASE)
_PRODUCT_RE = re.compile(rf"{_UNITS}\s+of\s+([A-Za-z][\w\- ]*?)(?=\s+(?:to|for|by|delivered)\b|[.,\n]|$)", re.IGNORECASE)
_LOCATION_RE = re.compile(r"\b(?:to|in|at)\s+([A-Z][a-zA-Z]+(?: [A-Z][a-zA-Z]+)*,\s*[A-Z]{2})\b")
_DATE_RE = re.compile(r"\bby\s+([A-Z][a-z]+ \d{1,2}(?:st|nd|rd|th)?(?:,? \d{4})?|\d{4}-\d{2}-\d{2})")


class LLMError(Exception):
    """Raised when the text-analysis service call fails."""


class MalformedResponseError(ValueError):
    """Raised when a model response holds no usable JSON object."""

    def __init__(self, message: str, raw: str):
        super().__init__(message)
        self.raw = raw


def parse_json_response(content: Optional[str]) -> Dict[str, Any]:
    """
    Parse a model response that should be a single JSON object.

    Code fences and a leading "JSON" tag are stripped first. Anything that
    still does not parse to an object raises MalformedResponseError.
    """
    raw = content or ""
    cleaned = _FENCE_RE.sub("", raw).strip()
    cleaned = _JSON_TAG_RE.sub("", cleaned, count=1).strip()

    try:
        result = json.loads(cleaned)
    except json.JSONDecodeError:
        # Prose around the object: take the outermost braces
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise MalformedResponseError("No JSON object in model response", raw)
        try:
            result = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Model response is not valid JSON: {e}", raw)

    if not isinstance(result, dict):
        raise MalformedResponseError("Model response is not a JSON object", raw)
    return result


class LLMClient:
    """Text-analysis client for email classification, extraction and lead scoring."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, client=None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.client = client

        if self.client is None and self.api_key:
            from openai import OpenAI
            self.client = OpenAI(api_key=self.api_key)

        if self.client is None:
            logger.warning("No OpenAI API key provided, using mock mode")

    @property
    def mock(self) -> bool:
        return self.client is None

    def _complete(self, system: str, prompt: str, temperature: float = 0.1) -> str:
        from openai import OpenAIError

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt}
                ],
                temperature=temperature,
            )
        except OpenAIError as e:
            raise LLMError(f"Text-analysis call failed: {e}") from e
        return response.choices[0].message.content or ""

    def classify_email(self, subject: str, body: str) -> str:
        """
        Classify an email as "lead" or "inquiry".

        Any answer other than "lead" counts as an inquiry.
        """
        if self.mock:
            text = f"{subject}\n{body}".lower()
            return "lead" if any(word in text for word in LEAD_KEYWORDS) else "inquiry"

        content = self._complete(
            self._get_classification_rubric(),
            f"Subject: {subject}\nBody: {body}",
            temperature=0.0,
        )
        label = content.strip().strip(".").lower()
        return "lead" if label == "lead" else "inquiry"

    def extract_order(self, business_context: str, subject: str, body: str) -> Dict[str, Any]:
        """Extract order fields from an inquiry email as a JSON object."""
        if self.mock:
            return self._mock_extraction(body)

        content = self._complete(
            self._get_extraction_rubric(business_context),
            f"Subject: {subject}\nBody: {body}",
        )
        return parse_json_response(content)

    def analyze_lead(self, email: Dict[str, Any]) -> Dict[str, Any]:
        """Infer opportunities, needs, risks and urgency from a lead email."""
        if self.mock:
            return self._mock_analysis(email)

        prompt = f"""Analyze this lead email:
Subject: {email.get('subject', '')}
From: {email.get('sender', '')}
Body: {email.get('body', '')}"""
        return parse_json_response(self._complete(self._get_analysis_rubric(), prompt, temperature=0.3))

    def score_lead(self, lead: Dict[str, Any]) -> Dict[str, Any]:
        """Assign HOT/WARM/COLD priority to an analyzed lead."""
        if self.mock:
            return self._mock_score(lead)

        prompt = f"Score this lead:\n\n{json.dumps(lead, indent=2, default=str)}"
        return parse_json_response(self._complete(self._get_scoring_rubric(), prompt))

    def _get_classification_rubric(self) -> str:
        return """You sort inbound sales email into two kinds.

An inquiry asks about one transaction: product details, price, availability,
stock, delivery time or shipping cost.

A lead signals a wider relationship: distribution or resale, partnerships,
multiple locations, custom or bulk arrangements, annual supply contracts,
consultation, or supply-chain integration.

Respond with ONLY "inquiry" or "lead"."""

    def _get_extraction_rubric(self, business_context: str) -> str:
        return f"""You extract order details from customer inquiries for this business.

{business_context}

Return ONLY a JSON object with this structure:
{{
    "product_name": "extracted product name",
    "quantity": "extracted quantity",
    "delivery_date": "extracted delivery date",
    "delivery_location": "extracted location",
    "customer_name": "extracted customer name",
    "company_name": "extracted company name",
    "inquiry_type": "one of: product_inquiry, price_request, availability_check, custom_order"
}}"""

    def _get_analysis_rubric(self) -> str:
        return """You are a business analyst reviewing a sales lead email.
Infer what makes the lead valuable, hidden opportunities, unstated needs,
likely risks and urgency factors. Never leave a list empty; infer 2-3
reasonable items from industry context.

Return ONLY a JSON object:
{"unique_value_propositions": [], "hidden_opportunities": [], "unstated_needs": [],
 "potential_risks": [], "urgency_factors": [], "core_request": ""}"""

    def _get_scoring_rubric(self) -> str:
        return """You prioritize sales leads for the sales team.

- HOT (priority 8-10): same-day response. Urgent needs, angry customers, large immediate deals.
- WARM (priority 5-7): respond within 1-2 business days. Growth opportunities.
- COLD (priority 1-4): regular queue, 3+ business days. No clear timeline.

Return ONLY a JSON object:
{"score": "HOT|WARM|COLD", "confidence": 0.0-1.0, "reasons": [], "recommended_actions": [],
 "priority_level": 1-10, "key_strengths": [],
 "analysis_components": {"unique_value_propositions": [], "hidden_opportunities": [],
   "unstated_needs": [], "potential_risks": [], "urgency_factors": []},
 "follow_up_timeline": "", "tone_analysis": {"customer_sentiment": "", "urgency_indicators": [],
   "emotional_signals": []},
 "response_priority": {"timeframe": "", "reason": ""}}"""

    def _mock_extraction(self, body: str) -> Dict[str, Any]:
        """Regex extraction for testing/fallback."""
        quantity = _QUANTITY_RE.search(body)
        product = _PRODUCT_RE.search(body)
        location = _LOCATION_RE.search(body)
        date = _DATE_RE.search(body)

        return {
            "product_name": product.group(1).strip() if product else None,
            "quantity": f"{quantity.group(1)} {quantity.group(2)}" if quantity else None,
            "delivery_date": date.group(1) if date else None,
            "delivery_location": location.group(1) if location else None,
            "inquiry_type": "availability_check",
        }

    def _mock_analysis(self, email: Dict[str, Any]) -> Dict[str, Any]:
        """Keyword analysis for testing/fallback."""
        text = f"{email.get('subject', '')}\n{email.get('body', '')}".lower()
        signals = [word for word in LEAD_KEYWORDS if word in text]
        urgency = [word for word in URGENT_KEYWORDS if word in text]

        return {
            "unique_value_propositions": [f"Mentions {word}" for word in signals] or ["Inbound interest"],
            "hidden_opportunities": ["Recurring supply agreement"] if signals else ["Follow-up order potential"],
            "unstated_needs": ["Reliable delivery schedule"],
            "potential_risks": ["Evaluating other suppliers"],
            "urgency_factors": [f"Uses '{word}'" for word in urgency],
            "core_request": email.get("subject", ""),
        }

    def _mock_score(self, lead: Dict[str, Any]) -> Dict[str, Any]:
        """Rule-based scoring for testing/fallback."""
        analysis = lead.get("analysis", {})
        urgency = analysis.get("urgency_factors") or []
        signals = analysis.get("unique_value_propositions") or []

        priority = 3 + 2 * len(urgency) + len(signals)
        priority = max(1, min(10, priority))
        if priority >= 8:
            score, timeframe = "HOT", "Same day"
        elif priority >= 5:
            score, timeframe = "WARM", "Within 1-2 business days"
        else:
            score, timeframe = "COLD", "Within 3+ business days"

        return {
            "score": score,
            "confidence": 0.5,
            "priority_level": priority,
            "reasons": [f"{len(urgency)} urgency signal(s)", f"{len(signals)} value signal(s)"],
            "recommended_actions": ["Reply to the sender"],
            "key_strengths": signals[:3],
            "analysis_components": {
                key: analysis.get(key, [])
                for key in ("unique_value_propositions", "hidden_opportunities",
                            "unstated_needs", "potential_risks", "urgency_factors")
            },
            "follow_up_timeline": timeframe,
            "response_priority": {"timeframe": timeframe, "reason": "Rule-based scoring (mock mode)"},
        }
