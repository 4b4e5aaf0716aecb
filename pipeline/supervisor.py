"""
Per-customer process supervisor.

Starts one OS process per stage assigned to the customer and keeps each of
them alive on its own: a stage that exits with a non-zero code (or is killed
by a signal the supervisor did not send) is started again after a fixed
delay, forever. Stages that exit with code 0, or that the supervisor
terminated itself, are not restarted.

Usage: python -m pipeline.supervisor <customer_id>
"""
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from loguru import logger

from pipeline.harness import StartupError
from tools.config_store import ConfigStoreError, get_config_store
from tools.log_setup import configure_logging

STAGE_MODULES = {
    "ingest": "pipeline.stages.ingest",
    "parse": "pipeline.stages.parse",
    "inventory": "pipeline.stages.inventory",
    "price": "pipeline.stages.price",
    "decide": "pipeline.stages.decide",
    "respond": "pipeline.stages.respond",
    "lead_analyze": "pipeline.stages.lead_analyze",
    "lead_score": "pipeline.stages.lead_score",
    "lead_notify": "pipeline.stages.lead_notify",
}

# Names used by older customer configs
STAGE_ALIASES = {
    "pricing": "price",
    "decision": "decide",
    "emailAgent": "ingest",
    "parserAgent": "parse",
    "inventoryAgent": "inventory",
    "pricingAgent": "price",
    "decisionAgent": "decide",
    "responseAgent": "respond",
    "leadAgent": "lead_analyze",
    "scoringAgent": "lead_score",
    "LeadEmailNotificationAgent": "lead_notify",
}

AgentKey = Tuple[str, str, int]


def resolve_stage(name: Optional[str]) -> Optional[str]:
    """Canonical stage name for an assigned agent name, or None if unknown."""
    if not name:
        return None
    name = name.strip()
    if name in STAGE_MODULES:
        return name
    return STAGE_ALIASES.get(name)


@dataclass
class RunningAgent:
    customer_id: str
    stage_name: str
    instance_index: int
    process_handle: Any
    restart_count: int = 0

    @property
    def key(self) -> AgentKey:
        return (self.customer_id, self.stage_name, self.instance_index)


def spawn_stage_process(stage_name: str, customer_id: str) -> subprocess.Popen:
    """Start a stage as `python -m pipeline.stages.<stage> <customer_id>`."""
    return subprocess.Popen([sys.executable, "-m", STAGE_MODULES[stage_name], customer_id])


def describe_exit(code: int) -> str:
    if code < 0:
        try:
            return f"signal {signal.Signals(-code).name}"
        except ValueError:
            return f"signal {-code}"
    return f"code {code}"


class Supervisor:
    """Keeps every stage assigned to one customer running."""

    def __init__(
        self,
        customer_id: str,
        config_store=None,
        spawner: Callable[[str, str], Any] = spawn_stage_process,
        restart_delay: Optional[float] = None,
        poll_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not customer_id:
            raise StartupError("No customer_id provided. Usage: python -m pipeline.supervisor <customer_id>")

        self.customer_id = customer_id
        self.config_store = config_store
        self.spawner = spawner
        self.restart_delay = restart_delay if restart_delay is not None else float(os.getenv("AGENT_RESTART_DELAY", "3"))
        self.poll_interval = poll_interval if poll_interval is not None else float(os.getenv("SUPERVISOR_POLL_INTERVAL", "0.5"))
        self.clock = clock
        self.sleep = sleep

        self.agents: Dict[AgentKey, RunningAgent] = {}
        self.pending_restarts: Dict[AgentKey, Tuple[float, int]] = {}
        self._terminating = set()
        self._running = False

    def load_stages(self) -> List[str]:
        """
        Canonical stage names assigned to the customer, in config order.

        Raises:
            StartupError: If the customer config cannot be read or assigns nothing
        """
        store = self.config_store
        try:
            store = store or get_config_store()
            config = store.get_config(self.customer_id)
        except ConfigStoreError as e:
            raise StartupError(str(e)) from e
        finally:
            if self.config_store is None and store is not None:
                store.close()

        if config is None or not config.assigned_agents:
            raise StartupError(f"No agents assigned for customer {self.customer_id}")

        stages = []
        for name in config.assigned_agents:
            stage = resolve_stage(name)
            if stage is None:
                logger.warning(f"Unknown stage '{name}' assigned to {self.customer_id}, skipping")
            elif stage in stages:
                logger.warning(f"Stage '{stage}' assigned twice to {self.customer_id}, starting it once")
            else:
                stages.append(stage)
        return stages

    def start_agent(self, stage_name: str, instance_index: int = 0, restart_count: int = 0) -> Optional[RunningAgent]:
        key = (self.customer_id, stage_name, instance_index)
        logger.info(f"Starting {stage_name} for customer {self.customer_id} (instance {instance_index + 1})")

        try:
            handle = self.spawner(stage_name, self.customer_id)
        except OSError as e:
            logger.error(f"{stage_name} for {self.customer_id} failed to start: {e}")
            self._schedule_restart(key, restart_count + 1)
            return None

        agent = RunningAgent(self.customer_id, stage_name, instance_index, handle, restart_count)
        self.agents[key] = agent
        return agent

    def _schedule_restart(self, key: AgentKey, restart_count: int) -> None:
        self.pending_restarts[key] = (self.clock() + self.restart_delay, restart_count)

    def check_agents(self) -> None:
        """Reap exited children and schedule restarts for crashed ones."""
        for key, agent in list(self.agents.items()):
            code = agent.process_handle.poll()
            if code is None:
                continue

            del self.agents[key]
            name = f"{agent.customer_id}_{agent.stage_name}_{agent.instance_index + 1}"

            if code == 0 or key in self._terminating:
                self._terminating.discard(key)
                logger.info(f"{name} exited normally ({describe_exit(code)})")
                continue

            logger.error(f"{name} crashed ({describe_exit(code)}). Restarting in {self.restart_delay:g} seconds")
            self._schedule_restart(key, agent.restart_count + 1)

    def restart_due(self) -> None:
        now = self.clock()
        for key, (due, restart_count) in list(self.pending_restarts.items()):
            if now < due:
                continue
            del self.pending_restarts[key]
            _, stage_name, instance_index = key
            self.start_agent(stage_name, instance_index, restart_count)

    def tick(self) -> None:
        self.check_agents()
        self.restart_due()

    def start(self) -> None:
        for stage in self.load_stages():
            self.start_agent(stage)
        self._running = True

    def run(self) -> None:
        self.start()
        while self._running:
            self.tick()
            self.sleep(self.poll_interval)

    def shutdown(self) -> None:
        """Terminate every tracked child. Does not wait for them to exit."""
        logger.info("Shutting down all agents")
        self._running = False
        self.pending_restarts.clear()

        for key, agent in list(self.agents.items()):
            logger.info(f"Stopping {agent.stage_name} for {agent.customer_id}")
            self._terminating.add(key)
            try:
                agent.process_handle.terminate()
            except ProcessLookupError:
                pass


def run(customer_id: str, **kwargs) -> Supervisor:
    """Supervise a customer's stages until SIGINT or SIGTERM."""
    supervisor = Supervisor(customer_id, **kwargs)

    def handle_signal(signum, frame):
        supervisor.shutdown()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    supervisor.run()
    return supervisor


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv()
    args = sys.argv[1:] if argv is None else argv
    customer_id = args[0].strip() if args else ""
    configure_logging(f"supervisor_{customer_id or 'unknown'}")

    try:
        run(customer_id)
    except StartupError as e:
        logger.error(f"Supervisor failed to start: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
