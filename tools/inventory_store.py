import re
from typing import Any, Dict, Optional

from loguru import logger
from pymongo import MongoClient

from pipeline.state import UNKNOWN_WAREHOUSE, InventoryStatus

DEFAULT_FIELD_MAPPING = {
    "product_name": "product_name",
    "warehouse_location": "warehouse_location",
    "quantity_available": "quantity_available",
}


class InventoryConfigError(ValueError):
    """Raised when a customer's inventory data source cannot be used."""


class InventoryStore:
    """
    Stock lookup in a customer's own MongoDB inventory collection.

    The collection and field names come from the customer's
    data_sources.inventory entry.
    """

    def __init__(self, source: Dict[str, Any], client: Optional[MongoClient] = None):
        if source.get("type") != "NoSQL" or source.get("platform") != "MongoDB":
            raise InventoryConfigError(
                f"Unsupported database type: {source.get('type')} {source.get('platform')}"
            )
        if client is None and not source.get("connection_string"):
            raise InventoryConfigError("No connection string provided in inventory configuration")
        if not source.get("inventory_source"):
            raise InventoryConfigError("No inventory collection provided in inventory configuration")

        self.source = source
        self.fields = {**DEFAULT_FIELD_MAPPING, **(source.get("product_field_mapping") or {})}
        self.client = client if client is not None else MongoClient(source["connection_string"])

    @property
    def collection(self):
        return self.client.get_default_database(default="inventory")[self.source["inventory_source"]]

    def _exact(self, value: str) -> Dict[str, str]:
        return {"$regex": f"^{re.escape(value)}$", "$options": "i"}

    def _to_status(self, doc: Dict[str, Any], alternative: bool = False) -> InventoryStatus:
        return InventoryStatus(
            quantity_available=doc.get(self.fields["quantity_available"], 0),
            warehouse_location=doc.get(self.fields["warehouse_location"]) or UNKNOWN_WAREHOUSE,
            unit_price=doc.get("unit_price") or 0,
            shipping_price=doc.get("shipping_price") or {},
            status="Available",
            is_alternative_location=True if alternative else None,
        )

    def check(self, product_name: str, delivery_location: str) -> InventoryStatus:
        """
        Find stock for a product, preferring the delivery location.

        Order of preference: in stock at the delivery location, then the
        first warehouse holding any stock, else the out-of-stock sentinel.
        """
        name_field = self.fields["product_name"]
        qty_field = self.fields["quantity_available"]

        if delivery_location:
            exact = self.collection.find_one({
                name_field: self._exact(product_name),
                self.fields["warehouse_location"]: self._exact(delivery_location),
            })
            if exact and exact.get(qty_field, 0) > 0:
                logger.info(f"Found exact warehouse match in {exact.get(self.fields['warehouse_location'])}")
                return self._to_status(exact)

        alternative = self.collection.find_one({
            name_field: self._exact(product_name),
            qty_field: {"$gt": 0},
        })
        if not alternative:
            logger.info(f"No warehouses found with available {product_name}")
            return InventoryStatus.out_of_stock()

        logger.info(f"Found alternative warehouse in {alternative.get(self.fields['warehouse_location'])}")
        return self._to_status(alternative, alternative=True)

    def close(self) -> None:
        self.client.close()
