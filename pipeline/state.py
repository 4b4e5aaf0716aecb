import json
import re
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)

# Extra decoding passes allowed for envelopes that were stringified more than once
MAX_EXTRA_DECODES = 2

# Warehouse sentinel meaning no warehouse can service the request
UNKNOWN_WAREHOUSE = "Unknown"

_QUANTITY_RE = re.compile(r"^\s*(\d{1,3}(?:,\d{3})+|\d+)(?:\s+[A-Za-z][A-Za-z.]*)*\s*$")


class EnvelopeError(ValueError):
    """Raised when an inbound message cannot be turned into an envelope."""


class QuantityError(ValueError):
    """Raised when a quantity is neither a count nor a unit-suffixed string."""


def normalize_quantity(value: Any) -> int:
    """
    Coerce a requested quantity into an integer count.

    Accepts non-negative integers (or integral floats) and strings holding a
    whole count optionally followed by unit words, such as "50 units" or
    "1,200 bags". Fractions, ranges and trailing junk are rejected.
    """
    if isinstance(value, bool):
        raise QuantityError(f"Invalid quantity format: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise QuantityError(f"Quantity cannot be negative: {value}")
        return value
    if isinstance(value, float):
        if value.is_integer() and value >= 0:
            return int(value)
        raise QuantityError(f"Invalid quantity format: {value!r}")
    if isinstance(value, str):
        match = _QUANTITY_RE.match(value)
        if match:
            return int(match.group(1).replace(",", ""))
    raise QuantityError(f"Invalid quantity format: {value!r}")


def money_to_json(value: Decimal) -> Union[int, float]:
    """
    Write money as a JSON number, integral amounts as integers.

    Up to 15 significant digits the shortest float repr is the exact decimal
    text, so the digits survive the trip. Readers must parse these numbers as
    Decimal (pydantic models here do); float arithmetic on them is not exact.
    """
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def decode_envelope(raw: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    """
    Decode a bus payload into a JSON object.

    Payloads are sometimes stringified twice upstream, so a decoded string is
    decoded again, at most MAX_EXTRA_DECODES more times.
    """
    data: Any = raw
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        if isinstance(data, str):
            data = json.loads(data)
        passes = 0
        while isinstance(data, str):
            if passes >= MAX_EXTRA_DECODES:
                raise EnvelopeError("Envelope decoding did not converge")
            data = json.loads(data)
            passes += 1
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EnvelopeError(f"Envelope is not valid JSON: {e}") from e
    except RecursionError as e:
        raise EnvelopeError("Envelope is nested too deeply") from e

    if not isinstance(data, dict):
        raise EnvelopeError(f"Envelope must be a JSON object, got {type(data).__name__}")
    return data


Quantity = Annotated[int, BeforeValidator(normalize_quantity)]
Money = Annotated[Decimal, Field(ge=0), PlainSerializer(money_to_json)]


class Envelope(BaseModel):
    """Base for every inter-stage message. Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    customer_id: Optional[str] = None


class RawEmail(Envelope):
    """Email as published by the ingest stage."""

    message_id: Optional[str] = None
    sender: str
    subject: str = "No Subject"
    body: str = "No Content"
    type: Literal["inquiry", "lead"] = "inquiry"
    received_at: Optional[str] = None


class ParsedRequest(Envelope):
    """Structured order intent extracted from an inquiry email."""

    product_name: str = Field(validation_alias=AliasChoices("product_name", "Product Name"))
    quantity: Quantity = Field(validation_alias=AliasChoices("quantity", "Quantity"))
    delivery_date: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("delivery_date", "Delivery Date")
    )
    delivery_location: str = Field(
        default="", validation_alias=AliasChoices("delivery_location", "Delivery Location")
    )
    sender_name: Optional[str] = None
    sender_email: Optional[str] = None
    company_name: Optional[str] = None
    inquiry_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("inquiry_type", "Type")
    )

    @field_validator("delivery_location", mode="before")
    @classmethod
    def _missing_location(cls, value: Any) -> Any:
        return "" if value is None else value


class ShippingPrice(BaseModel):
    local: Money = Decimal(0)
    regional: Money = Decimal(0)


class InventoryStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    quantity_available: int = Field(default=0, ge=0)
    warehouse_location: str = UNKNOWN_WAREHOUSE
    unit_price: Money = Decimal(0)
    shipping_price: ShippingPrice = Field(default_factory=ShippingPrice)
    status: Literal["Available", "Out of Stock"] = "Out of Stock"
    is_alternative_location: Optional[bool] = None

    @field_validator("shipping_price", mode="before")
    @classmethod
    def _first_rate_sheet(cls, value: Any) -> Any:
        # Inventory documents store the rate sheet as a one-element list
        if isinstance(value, list):
            return value[0] if value else {}
        return value

    @property
    def serviceable(self) -> bool:
        return self.warehouse_location != UNKNOWN_WAREHOUSE

    @classmethod
    def out_of_stock(cls) -> "InventoryStatus":
        return cls()


class PricingDetails(BaseModel):
    unit_price: Money
    quantity: int
    shipping_type: Literal["local", "regional"]
    warehouse_location: str
    delivery_location: str
    shipping_notes: str


class PricingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: Money
    shipping_cost: Money
    total_cost: Money
    pricing_details: PricingDetails


class InventoriedRequest(ParsedRequest):
    """Inventory-check output, consumed by the pricing stage."""

    inventory_status: InventoryStatus


class PricedRequest(InventoriedRequest):
    """Pricing output, consumed by the decision stage."""

    pricing_result: PricingResult


class DecisionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    NEEDS_CLARIFICATION = "NEEDS_CLARIFICATION"


class Alternative(BaseModel):
    type: str
    suggestion: str


class DeliveryContext(BaseModel):
    requested_location: str = ""
    warehouse_location: str = UNKNOWN_WAREHOUSE
    shipping_type: Optional[str] = None


class CustomerContext(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None


class DecisionContext(BaseModel):
    pricing: PricingResult
    inventory: InventoryStatus
    delivery: DeliveryContext
    customer: CustomerContext


class Decision(BaseModel):
    """Terminal outcome of an order evaluation."""

    model_config = ConfigDict(frozen=True)

    status: DecisionStatus
    reasoning: List[str] = Field(default_factory=list)
    alternatives: List[Alternative] = Field(default_factory=list)
    context: DecisionContext

    @field_validator("status")
    @classmethod
    def _terminal_only(cls, value: DecisionStatus) -> DecisionStatus:
        if value == DecisionStatus.PENDING:
            raise ValueError("PENDING is not a terminal decision status")
        return value


class DecisionEnvelope(Envelope):
    """Decision output, consumed by the respond stage."""

    product_name: str
    quantity: Any = None
    delivery_date: Optional[str] = None
    decision_result: Decision


class AnalysisComponents(BaseModel):
    model_config = ConfigDict(extra="ignore")

    unique_value_propositions: List[str] = Field(default_factory=list)
    hidden_opportunities: List[str] = Field(default_factory=list)
    unstated_needs: List[str] = Field(default_factory=list)
    potential_risks: List[str] = Field(default_factory=list)
    urgency_factors: List[str] = Field(default_factory=list)


class ResponsePriority(BaseModel):
    timeframe: str
    reason: Optional[str] = None


class ScoreAnalysis(BaseModel):
    model_config = ConfigDict(extra="allow")

    score: Literal["HOT", "WARM", "COLD"]
    confidence: float = Field(ge=0.0, le=1.0)
    priority_level: int = Field(ge=1, le=10)
    reasons: List[str] = Field(default_factory=list)
    recommended_actions: List[str] = Field(default_factory=list)
    key_strengths: List[str] = Field(default_factory=list)
    analysis_components: AnalysisComponents = Field(default_factory=AnalysisComponents)
    follow_up_timeline: Optional[str] = None
    tone_analysis: Optional[Dict[str, Any]] = None
    response_priority: ResponsePriority

    @field_validator("score", mode="before")
    @classmethod
    def _bare_score(cls, value: Any) -> Any:
        # "HOT LEAD", "hot" -> "HOT"
        if isinstance(value, str):
            return value.strip().upper().replace(" LEAD", "")
        return value


class Lead(Envelope):
    """Lead-analysis output, consumed by the scoring stage."""

    original_email: RawEmail
    analysis: Dict[str, Any]
    analyzed_at: Optional[str] = None

    @field_validator("analysis")
    @classmethod
    def _non_empty(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not value:
            raise ValueError("Lead analysis is empty")
        return value


class ScoredLead(Lead):
    """Scoring output, consumed by the lead notification stage."""

    score_analysis: ScoreAnalysis
    scored_at: Optional[str] = None


class CustomerConfig(BaseModel):
    """Tenant configuration document. Read-only for the pipeline."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    customer_id: str
    assigned_agents: List[str] = Field(default_factory=list)
    data_sources: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    credentials: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    notification_settings: Dict[str, Any] = Field(default_factory=dict)
    business_details: Dict[str, Any] = Field(default_factory=dict)
    decision_rules: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _drop_document_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and "_id" in data:
            data = {k: v for k, v in data.items() if k != "_id"}
        return data

    @field_validator("assigned_agents", mode="before")
    @classmethod
    def _agent_names(cls, value: Any) -> Any:
        # Entries are either plain names or {"agent_name": ...} objects
        if isinstance(value, list):
            return [item.get("agent_name") if isinstance(item, dict) else item for item in value]
        return value
