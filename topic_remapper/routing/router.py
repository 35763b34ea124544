import enum
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from loguru import logger

from .rule import RemapRule
from .table import RemapTable
from ..core.message import Message
from ..errors import PublishFailure, RoutingInconsistency
from ..mqtt.interfaces import IConnection


class RouterState(enum.Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"


class MessageRouter:
    """
    Receives every inbound message, finds its remap rule and republishes the
    rewritten payload on the destination topic.

    Each republish runs as its own task on a thread pool, so a slow publish
    never holds up the broker's delivery thread. As a consequence republished
    messages may leave in a different order than they arrived, even for the
    same source topic.
    """

    def __init__(
        self,
        table: RemapTable,
        connection: IConnection,
        max_workers: int | None = None,
    ):
        self.table = table
        self.connection = connection
        self._state = RouterState.INITIALIZING
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="remap"
        )
        self._in_flight: set[Future] = set()

    @property
    def state(self) -> RouterState:
        return self._state

    def start(self) -> None:
        """
        Subscribes to every source topic of the table. Any SubscriptionError
        propagates and the router never reaches RUNNING with a partial set.
        """
        self.connection.set_message_handler(self.dispatch)

        for rule in self.table:
            logger.info(f"Subscribing remap from {rule}...")
            self.connection.subscribe(rule.source_topic)

        with self._lock:
            if self._state is RouterState.INITIALIZING:
                self._state = RouterState.RUNNING
        logger.success(f"Router is running, bridging {len(self.table)} topic(s).")

    def dispatch(self, message: Message) -> None:
        try:
            rule = self._resolve(message.topic)
        except RoutingInconsistency as e:
            logger.error(str(e))
            return

        with self._lock:
            if self._state is RouterState.SHUTTING_DOWN:
                logger.debug(f"Shutting down, dropping message on '{message.topic}'.")
                return
            future = self._executor.submit(self._republish, rule, message)
            self._in_flight.add(future)
        future.add_done_callback(self._discard)

    def _resolve(self, topic: str) -> RemapRule:
        rule = self.table.lookup(topic)
        if rule is None:
            raise RoutingInconsistency(topic)
        return rule

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._in_flight.discard(future)

    def _republish(self, rule: RemapRule, message: Message) -> None:
        remapped = rule.apply(message.payload)
        logger.debug(
            f"Converting message {message.topic}: '{message.payload}' -> {rule.dest_topic}: '{remapped}'"
        )
        try:
            self.connection.publish(rule.dest_topic, remapped)
        except PublishFailure as e:
            logger.warning(f"{e}. Message from '{message.topic}' dropped.")
        except Exception:
            logger.exception(
                f"An unexpected error occurred while republishing a message from '{message.topic}'."
            )

    def stop(self, grace_period: float) -> int:
        """
        Stops accepting messages and waits at most `grace_period` seconds for
        the republishes already running. Returns how many were abandoned.
        """
        with self._lock:
            self._state = RouterState.SHUTTING_DOWN
            in_flight = set(self._in_flight)

        if not in_flight:
            self._executor.shutdown(wait=False)
            return 0

        logger.info(
            f"Waiting up to {grace_period}s for {len(in_flight)} in-flight republish(es)..."
        )
        _, not_done = wait(in_flight, timeout=grace_period)
        # Queued work never starts, only a publish already running can still finish.
        self._executor.shutdown(wait=False, cancel_futures=True)
        if not_done:
            logger.warning(
                f"{len(not_done)} republish(es) did not complete within the {grace_period}s "
                f"grace period and will be lost."
            )
        return len(not_done)
