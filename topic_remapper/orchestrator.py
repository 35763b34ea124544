import signal
import threading
from loguru import logger

from .config import RouterSettings
from .errors import BrokerConnectionError, SubscriptionError
from .mqtt.interfaces import IConnection
from .routing.router import MessageRouter
from .routing.table import RemapTable

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Orchestrator:
    def __init__(
        self,
        table: RemapTable,
        connection: IConnection,
        settings: RouterSettings | None = None,
    ):
        self._settings = settings or RouterSettings()
        self._connection = connection
        self._router = MessageRouter(
            table, connection, max_workers=self._settings.max_workers
        )
        self._stop_event = threading.Event()

    @property
    def router(self) -> MessageRouter:
        return self._router

    def run(self) -> int:
        """Runs the remapper until a shutdown signal, returns the exit code."""
        logger.info("Starting mqtt-topic-remapper...")
        previous_handlers = self._install_signal_handlers()
        try:
            try:
                self._connection.connect()
            except BrokerConnectionError as e:
                logger.critical(f"{e} Exiting.")
                return EXIT_STARTUP_FAILURE

            try:
                self._router.start()
            except SubscriptionError as e:
                logger.critical(f"{e}. Exiting.")
                self._router.stop(0)
                self._connection.disconnect(self._settings.disconnect_timeout)
                return EXIT_STARTUP_FAILURE

            logger.success("Remapper is running. Waiting for messages...")
            self._stop_event.wait()
            self.stop()
            return EXIT_OK
        finally:
            self._restore_signal_handlers(previous_handlers)

    def request_shutdown(self) -> None:
        self._stop_event.set()

    def _handle_signal(self, signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}. Shutting down...")
        self.request_shutdown()

    def _install_signal_handlers(self) -> dict:
        # Handlers can only be installed from the main thread.
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not running in the main thread, signal handlers not installed.")
            return {}

        previous = {}
        for signum in SHUTDOWN_SIGNALS:
            previous[signum] = signal.signal(signum, self._handle_signal)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def stop(self):
        logger.info("Shutting down mqtt-topic-remapper...")
        self._router.stop(self._settings.grace_period)
        self._connection.disconnect(self._settings.disconnect_timeout)
        logger.success("Remapper shut down successfully.")
