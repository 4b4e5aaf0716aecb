from typing import Any, Dict

from pymongo.errors import PyMongoError

from pipeline.harness import StageAgent, StartupError, run_stage, utc_now
from pipeline.state import ParsedRequest
from tools.bus import INVENTORY_CHANNEL, PARSED_EMAIL_CHANNEL
from tools.inventory_store import InventoryConfigError, InventoryStore


class InventoryAgent(StageAgent):
    """Attaches warehouse stock for the requested product."""

    name = "inventory"
    input_channel = PARSED_EMAIL_CHANNEL
    output_channel = INVENTORY_CHANNEL
    input_model = ParsedRequest

    def setup(self) -> None:
        source = self.config.data_sources.get("inventory")
        if not source:
            raise StartupError(f"No inventory data source configured for customer {self.customer_id}")
        try:
            self.store = InventoryStore(source)
        except (InventoryConfigError, PyMongoError) as e:
            raise StartupError(f"Inventory store unavailable: {e}") from e

    def teardown(self) -> None:
        store = getattr(self, "store", None)
        if store is not None:
            store.close()

    def transform(self, request: ParsedRequest, inbound: Dict[str, Any]) -> Dict[str, Any]:
        status = self.store.check(request.product_name, request.delivery_location)
        self.log.info(
            f"{request.product_name}: {status.quantity_available} available "
            f"at {status.warehouse_location} ({status.status})"
        )

        # Canonical field names for envelopes that arrived with display names
        normalized = {
            key: value
            for key, value in request.model_dump(mode="json", exclude={"customer_id"}).items()
            if key not in inbound
        }
        return self.extend(
            inbound,
            **normalized,
            inventory_status=status.model_dump(mode="json", exclude_none=True),
            checked_at=utc_now(),
        )


if __name__ == "__main__":
    run_stage(InventoryAgent)
