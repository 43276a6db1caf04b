"""
Ingestion daemon for diu.

The daemon is the only writer of the storage document. Events arrive
from wrapper scripts over a Unix socket and from the HTTP API, wait in a
bounded queue, and are classified and stored by a single consumer thread.

Threads:
    - diu-consumer: classifies queued records and appends them to the store
    - diu-accept: accepts socket connections, one diu-conn thread each
    - diu-api: uvicorn serving the FastAPI app (when api.enabled)

Lifecycle:
    created -> running -> stopping -> stopped

Backpressure:
    Producers wait at most daemon.enqueue_timeout_seconds for room in the
    queue. After that the event is dropped and the drop is logged.
"""

import json
import logging
import math
import os
import queue
import shlex
import signal
import socket
import threading
import time
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Any

import uvicorn

from diu import __version__
from diu.daemon.api import create_app
from diu.daemon.pidfile import pid_alive, read_pid, remove_pid_file, write_pid_file
from diu.errors import (
    DaemonAlreadyRunningError,
    DaemonError,
    DiuError,
    QueueClosedError,
    QueueFullError,
)
from diu.parsers.registry import ParserRegistry, build_registry
from diu.schema import Config, DaemonState, ExecutionRecord, HealthStatus, ensure_directories
from diu.store.json_store import JSONStore

logger = logging.getLogger(__name__)

CONSUMER_POLL_SECONDS = 0.2
ACCEPT_POLL_SECONDS = 1.0
CONNECTION_TIMEOUT_SECONDS = 5.0
MAX_PAYLOAD_BYTES = 1024 * 1024
RECV_CHUNK_BYTES = 64 * 1024


def split_command(command: str) -> list[str]:
    """Arguments after the binary in a raw command line."""
    try:
        tokens = shlex.split(command)
    except ValueError:
        tokens = command.split()
    return tokens[1:]


def format_uptime(seconds: float) -> str:
    return str(timedelta(seconds=int(seconds)))


def _is_complete_json(data: bytes) -> bool:
    try:
        json.loads(data)
    except ValueError:
        return False
    return True


def read_payload(conn: socket.socket) -> bytes:
    """
    Read one JSON payload from a connection.

    Reading stops at EOF or as soon as the bytes received so far form a
    complete JSON document.

    Raises:
        ValueError: If the payload is empty or larger than MAX_PAYLOAD_BYTES
        OSError: If the connection fails or times out
    """
    data = bytearray()
    while True:
        chunk = conn.recv(RECV_CHUNK_BYTES)
        if not chunk:
            break
        data.extend(chunk)
        if len(data) > MAX_PAYLOAD_BYTES:
            msg = f"payload exceeds {MAX_PAYLOAD_BYTES} bytes"
            raise ValueError(msg)
        if _is_complete_json(data):
            break
    if not data:
        msg = "empty payload"
        raise ValueError(msg)
    return bytes(data)


class Daemon:
    """
    The ingestion core: queue, consumer, socket listener, HTTP API.

    Usage:
        daemon = create_daemon(config)
        daemon.start()
        daemon.serve_forever()    # blocks until SIGINT/SIGTERM

    Or drive it directly (tests, embedding):
        daemon.start(install_signal_handlers=False)
        daemon.submit(record)
        daemon.flush(timeout=5)
        daemon.stop()
    """

    def __init__(self, config: Config, store: JSONStore, registry: ParserRegistry) -> None:
        self.config = config
        self.store = store
        self.registry = registry
        self.queue: queue.Queue[ExecutionRecord] = queue.Queue(maxsize=config.daemon.queue_size)
        self.dropped = 0

        self._state = DaemonState.CREATED
        self._state_lock = threading.Lock()
        self._dropped_lock = threading.Lock()
        self._cancel = threading.Event()
        self._stop_requested = threading.Event()
        self._queue_closed = threading.Event()
        self._started_at: float | None = None
        self._owns_pid_file = False

        self._consumer: threading.Thread | None = None
        self._socket: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._connections: set[threading.Thread] = set()
        self._connections_lock = threading.Lock()
        self._server: uvicorn.Server | None = None
        self._server_thread: threading.Thread | None = None
        self._previous_handlers: dict[int, Any] = {}

    @property
    def state(self) -> DaemonState:
        return self._state

    @property
    def uptime(self) -> float:
        """Seconds since start (0 before start)."""
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, install_signal_handlers: bool = True) -> None:
        """
        Start the consumer, parsers, socket listener and HTTP API.

        Raises:
            DaemonError: If the daemon was already started
            DaemonAlreadyRunningError: If another live daemon owns the PID file
        """
        with self._state_lock:
            if self._state is not DaemonState.CREATED:
                raise DaemonError(
                    state=self._state.value,
                    message=f"Cannot start a daemon that is {self._state.value}",
                )

            ensure_directories(self.config)
            pid_file = self.config.daemon.pid_file
            existing = read_pid(pid_file)
            if existing is not None and existing != os.getpid() and pid_alive(existing):
                raise DaemonAlreadyRunningError(state=self._state.value, pid=existing)
            write_pid_file(pid_file)
            self._owns_pid_file = True

            self._started_at = time.monotonic()
            self._state = DaemonState.RUNNING

        self._consumer = threading.Thread(target=self._consume, name="diu-consumer", daemon=True)
        self._consumer.start()
        self.registry.start_all(self._cancel, self.queue)
        self._start_socket()
        if self.config.api.enabled:
            self._start_api()
        if install_signal_handlers:
            self._install_signal_handlers()

        logger.info(
            "diu daemon started (pid %d, monitoring %s)",
            os.getpid(),
            ", ".join(self.registry.active()) or "nothing",
        )

    def stop(self) -> None:
        """
        Shut everything down in order. Safe to call more than once.

        Failures are logged and the remaining steps still run.
        """
        with self._state_lock:
            if self._state in (DaemonState.STOPPING, DaemonState.STOPPED):
                return
            self._state = DaemonState.STOPPING

        logger.info("Stopping diu daemon")
        self._cancel.set()
        self._stop_requested.set()

        self._shutdown_step("stop parsers", self.registry.stop_all)
        self._shutdown_step("stop HTTP API", self._stop_api)
        self._shutdown_step("close socket", self._stop_socket)
        self._shutdown_step("drain queue", self._stop_consumer)
        self._shutdown_step("close storage", self.store.close)
        if self._owns_pid_file:
            self._shutdown_step("remove PID file", lambda: remove_pid_file(self.config.daemon.pid_file))
            self._owns_pid_file = False
        self._shutdown_step("restore signal handlers", self._restore_signal_handlers)

        with self._state_lock:
            self._state = DaemonState.STOPPED
        logger.info("diu daemon stopped (%d events dropped)", self.dropped)

    @staticmethod
    def _shutdown_step(name: str, step: Callable[[], None]) -> None:
        try:
            step()
        except Exception:
            logger.exception("Shutdown step failed: %s", name)

    def request_stop(self) -> None:
        """Ask serve_forever() to return. Safe from signal handlers."""
        self._stop_requested.set()

    def serve_forever(self) -> None:
        """Block until a stop is requested, then stop."""
        if self._state is DaemonState.CREATED:
            self.start()
        try:
            while not self._stop_requested.wait(timeout=1.0):
                continue
        finally:
            self.stop()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not in the main thread, signal handlers not installed")
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _restore_signal_handlers(self) -> None:
        if not self._previous_handlers:
            return
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not in the main thread, signal handlers left in place")
            return
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_signal(self, signum: int, frame: Any) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        self.request_stop()

    # =========================================================================
    # Queue and Consumer
    # =========================================================================

    def submit(self, record: ExecutionRecord, timeout: float | None = None) -> None:
        """
        Enqueue a record for classification and storage.

        Args:
            record: The event
            timeout: Seconds to wait for room (defaults to enqueue_timeout_seconds)

        Raises:
            QueueClosedError: If the daemon is not running
            QueueFullError: If the queue stayed full for the whole timeout
        """
        if self._queue_closed.is_set() or self._state is not DaemonState.RUNNING:
            raise QueueClosedError(state=self._state.value)

        wait = self.config.daemon.enqueue_timeout_seconds if timeout is None else timeout
        try:
            self.queue.put(record, timeout=wait)
        except queue.Full:
            with self._dropped_lock:
                self.dropped += 1
            logger.warning("Event queue full, dropping %s event: %s", record.tool, record.command)
            raise QueueFullError(state=self._state.value, timeout_seconds=wait) from None

    def flush(self, timeout: float | None = None) -> bool:
        """
        Wait until every accepted record has been processed.

        Returns:
            False if the timeout expired first
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.queue.unfinished_tasks:
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def _consume(self) -> None:
        while True:
            try:
                record = self.queue.get(timeout=CONSUMER_POLL_SECONDS)
            except queue.Empty:
                if self._queue_closed.is_set():
                    return
                continue
            try:
                self._process(record)
            finally:
                self.queue.task_done()

    def _process(self, record: ExecutionRecord) -> None:
        try:
            self.store.append(self._enrich(record))
        except DiuError as e:
            logger.error("Failed to store %s event: %s", record.tool, e.message)
        except Exception:
            logger.exception("Unexpected error storing %s event", record.tool)

    def _enrich(self, record: ExecutionRecord) -> ExecutionRecord:
        """Fill in what the event lacks from the tool's parser. Event values win."""
        args = record.args or split_command(record.command)
        classified = self.registry.classify(record.tool, record.command, args)
        return record.model_copy(update={
            "args": list(args),
            "metadata": {**classified.metadata, **record.metadata},
            "packages_affected": record.packages_affected or classified.packages_affected,
        })

    def _stop_consumer(self) -> None:
        self._queue_closed.set()
        if self._consumer is not None:
            self._consumer.join()
            self._consumer = None

        # Records enqueued while the queue was closing
        while True:
            try:
                record = self.queue.get_nowait()
            except queue.Empty:
                break
            try:
                self._process(record)
            finally:
                self.queue.task_done()

    # =========================================================================
    # Unix Socket
    # =========================================================================

    def _start_socket(self) -> None:
        path = self.config.daemon.socket_path
        sock = None
        try:
            if path.exists() or path.is_symlink():
                path.unlink()
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.bind(str(path))
            sock.listen()
            sock.settimeout(ACCEPT_POLL_SECONDS)
        except OSError as e:
            logger.error("Socket listener unavailable at %s: %s", path, e)
            if sock is not None:
                sock.close()
            return

        self._socket = sock
        self._accept_thread = threading.Thread(
            target=self._accept_loop,
            args=(sock,),
            name="diu-accept",
            daemon=True,
        )
        self._accept_thread.start()
        logger.info("Listening on %s", path)

    def _accept_loop(self, sock: socket.socket) -> None:
        while not self._cancel.is_set():
            try:
                conn, _ = sock.accept()
            except TimeoutError:
                continue
            except OSError as e:
                if not self._cancel.is_set():
                    logger.error("Socket accept failed, listener stopped: %s", e)
                return

            thread = threading.Thread(
                target=self._handle_connection,
                args=(conn,),
                name="diu-conn",
                daemon=True,
            )
            with self._connections_lock:
                self._connections.add(thread)
            thread.start()

    def _handle_connection(self, conn: socket.socket) -> None:
        try:
            try:
                with conn:
                    conn.settimeout(CONNECTION_TIMEOUT_SECONDS)
                    payload = read_payload(conn)
                record = ExecutionRecord.model_validate_json(payload)
            except (OSError, ValueError) as e:
                logger.warning("Dropping malformed socket event: %s", e)
                return

            try:
                self.submit(record)
            except QueueFullError:
                pass
            except QueueClosedError:
                logger.warning("Daemon is stopping, dropping %s event", record.tool)
        finally:
            with self._connections_lock:
                self._connections.discard(threading.current_thread())

    def _stop_socket(self) -> None:
        sock, self._socket = self._socket, None
        if sock is None:
            return
        sock.close()
        path: Path = self.config.daemon.socket_path
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove socket %s: %s", path, e)

        if self._accept_thread is not None:
            self._accept_thread.join(timeout=ACCEPT_POLL_SECONDS + 1)
            self._accept_thread = None

        with self._connections_lock:
            connections = list(self._connections)
        for thread in connections:
            thread.join(timeout=CONNECTION_TIMEOUT_SECONDS)

    # =========================================================================
    # HTTP API
    # =========================================================================

    def _start_api(self) -> None:
        server_config = uvicorn.Config(
            create_app(self),
            host=self.config.api.host,
            port=self.config.api.port,
            log_level=self.config.daemon.log_level,
            log_config=None,
            timeout_graceful_shutdown=math.ceil(self.config.daemon.shutdown_timeout_seconds),
        )
        self._server = uvicorn.Server(server_config)
        self._server_thread = threading.Thread(target=self._run_api, name="diu-api", daemon=True)
        self._server_thread.start()
        logger.info("HTTP API on http://%s:%d/api/v1", self.config.api.host, self.config.api.port)

    def _run_api(self) -> None:
        try:
            self._server.run()
        except SystemExit:
            # uvicorn exits when it cannot bind
            logger.error(
                "HTTP API failed to start on %s:%d",
                self.config.api.host,
                self.config.api.port,
            )

    def _stop_api(self) -> None:
        if self._server is None:
            return
        self._server.should_exit = True
        if self._server_thread is not None:
            self._server_thread.join(timeout=self.config.daemon.shutdown_timeout_seconds)
            if self._server_thread.is_alive():
                logger.warning("HTTP API did not stop within the grace period, forcing exit")
                self._server.force_exit = True
                self._server_thread.join(timeout=1.0)
        self._server = None
        self._server_thread = None

    # =========================================================================
    # Status
    # =========================================================================

    def health(self) -> HealthStatus:
        uptime = self.uptime
        return HealthStatus(
            status="ok" if self._state is DaemonState.RUNNING else self._state.value,
            version=__version__,
            uptime=format_uptime(uptime),
            uptime_seconds=round(uptime, 3),
            monitors_active=len(self.registry.active()),
        )


def create_daemon(config: Config) -> Daemon:
    """
    Wire a daemon from the config: store, parser registry, daemon.

    Raises:
        StorageLoadError: If the storage document exists but can't be loaded
    """
    ensure_directories(config)
    store = JSONStore(config.storage_file)
    registry = build_registry(config)
    return Daemon(config, store, registry)
