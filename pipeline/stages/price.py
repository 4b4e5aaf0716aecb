from typing import Any, Dict

from pipeline.harness import StageAgent, run_stage, utc_now
from pipeline.pricing import calculate_total_cost
from pipeline.state import InventoriedRequest
from tools.bus import INVENTORY_CHANNEL, PRICING_CHANNEL


class PriceAgent(StageAgent):
    """Prices an order against the stock record it was matched with."""

    name = "price"
    input_channel = INVENTORY_CHANNEL
    output_channel = PRICING_CHANNEL
    input_model = InventoriedRequest

    def transform(self, request: InventoriedRequest, inbound: Dict[str, Any]) -> Dict[str, Any]:
        result = calculate_total_cost(request.quantity, request.inventory_status, request.delivery_location)
        self.log.info(
            f"Priced {result.pricing_details.quantity} x {request.product_name}: "
            f"subtotal {result.subtotal}, {result.pricing_details.shipping_type} shipping "
            f"{result.shipping_cost}, total {result.total_cost}"
        )
        return self.extend(inbound, pricing_result=result.model_dump(mode="json"), priced_at=utc_now())


if __name__ == "__main__":
    run_stage(PriceAgent)
