import decimal
from typing import Any, Dict

from pipeline.decision import DecisionRules, evaluate_order
from pipeline.harness import StageAgent, StartupError, run_stage, utc_now
from pipeline.state import CustomerContext, PricedRequest
from tools.bus import DECISION_CHANNEL, PRICING_CHANNEL


class DecideAgent(StageAgent):
    """Runs the order decision rules over a priced request."""

    name = "decide"
    input_channel = PRICING_CHANNEL
    output_channel = DECISION_CHANNEL
    input_model = PricedRequest

    def setup(self) -> None:
        try:
            self.rules = DecisionRules.load(self.config.decision_rules)
        except (ValueError, decimal.InvalidOperation) as e:
            raise StartupError(f"Invalid decision rules for customer {self.customer_id}: {e}") from e

    def transform(self, request: PricedRequest, inbound: Dict[str, Any]) -> Dict[str, Any]:
        pricing = request.pricing_result
        decision = evaluate_order(
            pricing.pricing_details.quantity,
            request.inventory_status,
            pricing,
            customer=CustomerContext(
                name=request.sender_name,
                email=request.sender_email,
                company=request.company_name,
            ),
            rules=self.rules,
        )

        self.log.info(f"Decision for {request.product_name}: {decision.status.value}")
        for reason in decision.reasoning:
            self.log.info(f"  - {reason}")
        for alternative in decision.alternatives:
            self.log.info(f"  alternative ({alternative.type}): {alternative.suggestion}")

        return {
            "customer_id": self.customer_id,
            "product_name": request.product_name,
            "quantity": inbound.get("quantity", request.quantity),
            "delivery_date": request.delivery_date,
            "decision_result": decision.model_dump(mode="json"),
            "decided_at": utc_now(),
        }


if __name__ == "__main__":
    run_stage(DecideAgent)
