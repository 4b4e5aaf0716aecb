"""
Common runtime for pipeline stage processes.

A stage process serves one customer. It subscribes to one input channel,
turns every inbound envelope into at most one outbound envelope and publishes
that on one output channel. Failures while handling a message are logged and
the message is dropped; failures while starting up end the process with a
non-zero exit code so the supervisor restarts it.
"""
import copy
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

import redis
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ValidationError

from pipeline.state import CustomerConfig, Envelope, EnvelopeError, decode_envelope
from tools.bus import ChannelBus, channel_name
from tools.config_store import ConfigStoreError, get_config_store
from tools.llm import MalformedResponseError
from tools.log_setup import configure_logging, mask_sensitive


class StartupError(Exception):
    """A stage cannot run: missing customer id, config or credentials."""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StageAgent:
    """
    Base class for a pipeline stage.

    Subclasses set the channel names and input model and implement
    transform(). Sinks (no output channel) do their work inside transform()
    and return None.
    """

    name = "stage"
    input_channel: Optional[str] = None
    output_channel: Optional[str] = None
    input_model: Type[BaseModel] = Envelope

    def __init__(self, customer_id: str, config: CustomerConfig, bus: ChannelBus):
        self.customer_id = customer_id
        self.config = config
        self.bus = bus
        self.log = logger.bind(customer_id=customer_id, stage=self.name)
        self.processed = 0
        self.dropped = 0

    @property
    def input_channel_name(self) -> Optional[str]:
        return channel_name(self.input_channel, self.customer_id) if self.input_channel else None

    @property
    def output_channel_name(self) -> Optional[str]:
        return channel_name(self.output_channel, self.customer_id) if self.output_channel else None

    def setup(self) -> None:
        """Acquire stage resources. Raise StartupError if they are missing."""

    def teardown(self) -> None:
        """Release stage resources."""

    def transform(self, envelope: BaseModel, inbound: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def extend(self, inbound: Dict[str, Any], **additions: Any) -> Dict[str, Any]:
        """New envelope holding every inbound field plus this stage's additions."""
        outbound = copy.deepcopy(inbound)
        outbound.setdefault("customer_id", self.customer_id)
        outbound.update(additions)
        return outbound

    def handle(self, raw: Any) -> bool:
        """
        Process one bus message end to end.

        Returns:
            True if the message was handled, False if it was dropped
        """
        try:
            inbound = decode_envelope(raw)
            envelope = self.input_model.model_validate(inbound)
        except (EnvelopeError, ValidationError) as e:
            self._drop(f"Malformed message on {self.input_channel_name}: {e}")
            return False

        self.log.debug(f"Received message: {mask_sensitive(inbound)}")

        try:
            outbound = self.transform(envelope, inbound)
        except MalformedResponseError as e:
            self._drop(f"{e}. Raw response for manual review: {e.raw!r}")
            return False
        except ValueError as e:
            self._drop(f"Invalid {self.name} input: {e}")
            return False
        except Exception as e:
            self.log.exception(f"Error processing message in {self.name}: {e}")
            self.dropped += 1
            return False

        if outbound is not None and self.output_channel_name:
            try:
                self.bus.publish(self.output_channel_name, outbound)
            except redis.RedisError as e:
                self._drop(f"Publishing to {self.output_channel_name} failed: {e}")
                return False

        self.processed += 1
        return True

    def _drop(self, reason: str) -> None:
        self.dropped += 1
        self.log.error(f"Message dropped: {reason}")

    def run(self) -> None:
        self.log.info(f"{self.name} agent for customer {self.customer_id} is running")
        self.bus.subscribe(self.input_channel_name, self.handle)

    def stop(self) -> None:
        self.log.info(f"Shutting down {self.name} agent")
        self.bus.stop()

    def close(self) -> None:
        try:
            self.teardown()
        finally:
            self.bus.close()


def bootstrap(
    agent_cls: Type[StageAgent],
    customer_id: Optional[str],
    config_store=None,
    bus: Optional[ChannelBus] = None,
) -> StageAgent:
    """
    Build a ready-to-run stage for a customer.

    Raises:
        StartupError: If the customer id, its config or the broker is unavailable,
            or the stage's own setup() fails
    """
    if not customer_id:
        raise StartupError(
            f"No customer_id provided. Usage: python -m pipeline.stages.{agent_cls.name} <customer_id>"
        )

    store = config_store
    try:
        store = store or get_config_store()
        config = store.get_config(customer_id)
    except ConfigStoreError as e:
        raise StartupError(str(e)) from e
    finally:
        if config_store is None and store is not None:
            store.close()

    if config is None:
        raise StartupError(f"No configuration found for customer {customer_id}")

    bus = bus or ChannelBus()
    if not bus.ping():
        raise StartupError(f"Message broker unreachable at {bus.redis_url}")

    agent = agent_cls(customer_id, config, bus)
    try:
        agent.setup()
    except StartupError:
        bus.close()
        raise
    return agent


def run_stage(agent_cls: Type[StageAgent], argv: Optional[List[str]] = None) -> None:
    """Process entry point: python -m pipeline.stages.<name> <customer_id>."""
    load_dotenv()
    args = sys.argv[1:] if argv is None else argv
    customer_id = args[0].strip() if args else ""
    configure_logging(f"{agent_cls.name}_{customer_id or 'unknown'}")

    try:
        agent = bootstrap(agent_cls, customer_id)
    except StartupError as e:
        logger.error(f"{agent_cls.name} agent failed to start: {e}")
        sys.exit(1)

    signal.signal(signal.SIGTERM, lambda signum, frame: agent.stop())
    signal.signal(signal.SIGINT, lambda signum, frame: agent.stop())

    try:
        agent.run()
    except redis.RedisError as e:
        logger.error(f"{agent_cls.name} agent lost the message broker: {e}")
        sys.exit(1)
    finally:
        agent.close()
