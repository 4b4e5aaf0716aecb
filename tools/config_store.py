import json
import os
from typing import Any, Dict, Optional

from loguru import logger
from pydantic import ValidationError
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from pipeline.state import CustomerConfig

CONFIG_COLLECTION = "customers_config"


class ConfigStoreError(Exception):
    """Raised when the configuration store cannot be read."""


class MongoConfigStore:
    """Tenant configuration documents in MongoDB (customers_config collection)."""

    def __init__(self, uri: Optional[str] = None, database: Optional[str] = None, client: Optional[MongoClient] = None):
        self.uri = uri or os.getenv("MONGODB_URI")
        self.database = database or os.getenv("MONGODB_DATABASE", "multi_ai_system")

        if client is None and not self.uri:
            raise ConfigStoreError("MONGODB_URI is not set")
        self.client = client if client is not None else MongoClient(self.uri)

    def get_config(self, customer_id: str) -> Optional[CustomerConfig]:
        """
        Fetch one customer's configuration.

        Returns:
            CustomerConfig, or None if the customer is unknown
        """
        try:
            document = self.client[self.database][CONFIG_COLLECTION].find_one({"customer_id": customer_id})
        except PyMongoError as e:
            raise ConfigStoreError(f"Config lookup failed for {customer_id}: {e}") from e

        if not document:
            return None
        return _to_config(document)

    def close(self) -> None:
        self.client.close()


class FileConfigStore:
    """Tenant configuration read from a JSON file (a list of documents or a mapping by id)."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or os.getenv("CUSTOMER_CONFIG_PATH", "./infra/customers.json")

    def _load(self) -> Dict[str, Dict[str, Any]]:
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise ConfigStoreError(f"Customer config file not found at {self.path}") from e
        except json.JSONDecodeError as e:
            raise ConfigStoreError(f"Invalid JSON in customer config {self.path}") from e

        if isinstance(data, list):
            return {doc.get("customer_id"): doc for doc in data if isinstance(doc, dict)}
        return {key: {"customer_id": key, **doc} for key, doc in data.items()}

    def get_config(self, customer_id: str) -> Optional[CustomerConfig]:
        document = self._load().get(customer_id)
        if not document:
            return None
        return _to_config(document)

    def close(self) -> None:
        pass


def _to_config(document: Dict[str, Any]) -> CustomerConfig:
    try:
        return CustomerConfig.model_validate(document)
    except ValidationError as e:
        raise ConfigStoreError(f"Malformed customer config: {e}") from e


def get_config_store():
    """MongoDB store when MONGODB_URI is set, otherwise the JSON file store."""
    if os.getenv("MONGODB_URI"):
        return MongoConfigStore()
    logger.warning("No MONGODB_URI provided, reading customer configs from file")
    return FileConfigStore()
