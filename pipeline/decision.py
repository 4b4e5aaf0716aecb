import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, TypedDict

from langgraph.graph import END, START, StateGraph

from pipeline.state import (
    Alternative,
    CustomerContext,
    Decision,
    DecisionContext,
    DecisionStatus,
    DeliveryContext,
    InventoryStatus,
    PricingResult,
    UNKNOWN_WAREHOUSE,
)

PENDING = DecisionStatus.PENDING.value
THRESHOLD_STATUSES = (DecisionStatus.NEEDS_CLARIFICATION.value, DecisionStatus.REJECTED.value)
APPROVAL_REASON = "All criteria met: inventory available, location serviceable, cost within limits"


@dataclass(frozen=True)
class DecisionRules:
    """Cost threshold and the status an order above it receives."""

    cost_threshold: Decimal = Decimal("10000")
    threshold_status: str = DecisionStatus.NEEDS_CLARIFICATION.value

    def __post_init__(self):
        if self.threshold_status not in THRESHOLD_STATUSES:
            raise ValueError(f"Unsupported threshold status: {self.threshold_status}")

    @classmethod
    def load(cls, overrides: Optional[Dict[str, Any]] = None) -> "DecisionRules":
        """Build rules from the environment, then apply tenant overrides."""
        overrides = overrides or {}
        threshold = overrides.get("cost_threshold", os.getenv("DECISION_COST_THRESHOLD", "10000"))
        status = overrides.get(
            "threshold_status",
            os.getenv("DECISION_THRESHOLD_STATUS", DecisionStatus.NEEDS_CLARIFICATION.value),
        )
        return cls(cost_threshold=Decimal(str(threshold)), threshold_status=str(status).upper())


class DecisionState(TypedDict, total=False):
    """State carried through the decision graph."""
    requested_quantity: int
    available_quantity: int
    warehouse_location: str
    delivery_location: str
    shipping_type: str
    shipping_cost: Decimal
    total_cost: Decimal
    cost_threshold: Decimal
    threshold_status: str
    status: str                      # PENDING until a rule fires
    reasoning: List[str]
    alternatives: List[Dict[str, str]]
    rule: str                        # name of the rule that decided


def _money(value: Decimal) -> str:
    return f"${value:,.2f}"


def check_inventory(state: DecisionState) -> DecisionState:
    """Reject when more is requested than the warehouse holds."""
    requested = state["requested_quantity"]
    available = state["available_quantity"]

    if requested > available:
        state["status"] = DecisionStatus.REJECTED.value
        state["rule"] = "insufficient_inventory"
        state["reasoning"] = [
            *state.get("reasoning", []),
            f"Insufficient inventory. Requested: {requested}, Available: {available}",
        ]
        if available > 0:
            state["alternatives"] = [
                *state.get("alternatives", []),
                {
                    "type": "reduced_quantity",
                    "suggestion": f"Consider ordering maximum available quantity: {available}",
                },
            ]
    return state


def check_serviceability(state: DecisionState) -> DecisionState:
    """Reject when no warehouse can serve the delivery location."""
    if state.get("warehouse_location", UNKNOWN_WAREHOUSE) == UNKNOWN_WAREHOUSE:
        state["status"] = DecisionStatus.REJECTED.value
        state["rule"] = "unserviceable"
        state["reasoning"] = [
            *state.get("reasoning", []),
            "No warehouse available to service this location",
        ]
        return state

    if state.get("shipping_type") == "regional":
        state["reasoning"] = [
            *state.get("reasoning", []),
            f"Using warehouse in {state['warehouse_location']} for delivery to "
            f"{state.get('delivery_location') or 'the requested location'}. "
            f"Regional shipping rate of {_money(state.get('shipping_cost', Decimal(0)))} will apply.",
        ]
    return state


def check_cost(state: DecisionState) -> DecisionState:
    """Escalate (or reject) orders whose total exceeds the threshold."""
    total_cost = state["total_cost"]
    threshold = state["cost_threshold"]

    if total_cost <= threshold:
        return state

    state["rule"] = "cost_threshold"
    if state["threshold_status"] == DecisionStatus.NEEDS_CLARIFICATION.value:
        state["status"] = DecisionStatus.NEEDS_CLARIFICATION.value
        state["reasoning"] = [
            *state.get("reasoning", []),
            f"Order value {_money(total_cost)} exceeds standard limit of {_money(threshold)}",
        ]
        state["alternatives"] = [
            *state.get("alternatives", []),
            {
                "type": "special_approval",
                "suggestion": "Order requires management approval due to high value",
            },
        ]
    else:
        state["status"] = DecisionStatus.REJECTED.value
        state["reasoning"] = [
            *state.get("reasoning", []),
            f"Total cost ({_money(total_cost)}) exceeds threshold ({_money(threshold)})",
        ]
    return state


def approve(state: DecisionState) -> DecisionState:
    state["status"] = DecisionStatus.APPROVED.value
    state["rule"] = "approved"
    if not state.get("reasoning"):
        state["reasoning"] = [APPROVAL_REASON]
    return state


def _decided_or(next_node: str):
    def branch(state: DecisionState) -> str:
        return "decided" if state.get("status", PENDING) != PENDING else next_node
    return branch


def build_decision_graph():
    """Build the order decision state machine. First rule to fire wins."""
    workflow = StateGraph(DecisionState)

    workflow.add_node("check_inventory", check_inventory)
    workflow.add_node("check_serviceability", check_serviceability)
    workflow.add_node("check_cost", check_cost)
    workflow.add_node("approve", approve)

    workflow.add_edge(START, "check_inventory")
    workflow.add_conditional_edges(
        "check_inventory",
        _decided_or("check_serviceability"),
        {"decided": END, "check_serviceability": "check_serviceability"},
    )
    workflow.add_conditional_edges(
        "check_serviceability",
        _decided_or("check_cost"),
        {"decided": END, "check_cost": "check_cost"},
    )
    workflow.add_conditional_edges(
        "check_cost",
        _decided_or("approve"),
        {"decided": END, "approve": "approve"},
    )
    workflow.add_edge("approve", END)

    return workflow.compile()


decision_graph = build_decision_graph()


def evaluate_order(
    requested_quantity: int,
    inventory: InventoryStatus,
    pricing: PricingResult,
    customer: Optional[CustomerContext] = None,
    rules: Optional[DecisionRules] = None,
) -> Decision:
    """
    Decide on an order and attach the full context the respond stage needs.

    Rules, in priority order:
        1. requested > available       -> REJECTED (+ reduced_quantity alternative)
        2. warehouse is "Unknown"      -> REJECTED
        3. total_cost > cost_threshold -> rules.threshold_status
        4. otherwise                   -> APPROVED
    """
    rules = rules or DecisionRules()
    details = pricing.pricing_details

    final = decision_graph.invoke({
        "requested_quantity": requested_quantity,
        "available_quantity": inventory.quantity_available,
        "warehouse_location": inventory.warehouse_location,
        "delivery_location": details.delivery_location,
        "shipping_type": details.shipping_type,
        "shipping_cost": pricing.shipping_cost,
        "total_cost": pricing.total_cost,
        "cost_threshold": rules.cost_threshold,
        "threshold_status": rules.threshold_status,
        "status": PENDING,
        "reasoning": [],
        "alternatives": [],
    })

    if final.get("status", PENDING) == PENDING:
        raise RuntimeError("Decision graph finished without a terminal status")

    return Decision(
        status=final["status"],
        reasoning=final["reasoning"],
        alternatives=[Alternative(**alt) for alt in final.get("alternatives", [])],
        context=DecisionContext(
            pricing=pricing,
            inventory=inventory,
            delivery=DeliveryContext(
                requested_location=details.delivery_location,
                warehouse_location=inventory.warehouse_location,
                shipping_type=details.shipping_type,
            ),
            customer=customer or CustomerContext(),
        ),
    )
