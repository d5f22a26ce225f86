import asyncio
import signal
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Set

from obmp_whois.config import WhoisConfig
from obmp_whois.handlers import PrefixHandler, RecordSource
from obmp_whois.protocol import (
    ERROR_INVALID_REQUEST,
    ERROR_OUT_OF_RESOURCES,
    HELP_USAGE,
    AsnLookupCommand,
    Command,
    HelpCommand,
    InvalidCommand,
    PrefixLookupCommand,
    parse_command,
)
from obmp_whois.utils import setup_logging

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP, signal.SIGABRT)


class StartupError(Exception):
    pass


class AdmissionController:
    """Bounds the number of connections being served at once.

    A connection that finds no free permit waits up to ``wait_timeout``
    seconds for one before it is turned away.
    """

    def __init__(self, max_connections: int, wait_timeout: float):
        self.max_connections = max_connections
        self.wait_timeout = wait_timeout
        self._slots = asyncio.Semaphore(max_connections)
        self._active = 0
        self.logger = setup_logging("Admission")

    @property
    def active(self) -> int:
        return self._active

    async def acquire(self) -> bool:
        if self._slots.locked():
            self.logger.warning(
                f"Max connections {self.max_connections} reached. Waiting up to {self.wait_timeout}s for one to complete"
            )
            try:
                await asyncio.wait_for(self._slots.acquire(), timeout=self.wait_timeout)
            except asyncio.TimeoutError:
                return False
            self.logger.info("Connection slot free, continuing to process request")
        else:
            await self._slots.acquire()

        self._active += 1
        return True

    def release(self):
        if self._active > 0:
            self._active -= 1
        self._slots.release()


class WhoisServer:
    def __init__(self, config: WhoisConfig, store: RecordSource):
        self.config = config
        self.store = store
        self.logger = setup_logging("WhoisServer")
        self.server: Optional[asyncio.AbstractServer] = None
        self.admission: Optional[AdmissionController] = None
        self.prefix_handler = PrefixHandler(store)
        self.executor = ThreadPoolExecutor(
            max_workers=config.server.max_connections, thread_name_prefix="whois-query"
        )
        self.workers: Set[asyncio.Task] = set()
        self._shutdown: Optional[asyncio.Event] = None

    @property
    def port(self) -> int:
        """Bound port, useful when configured with port 0."""
        return self.server.sockets[0].getsockname()[1]

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        remote = writer.get_extra_info("peername")
        remote_str = f"{remote[0]}:{remote[1]}" if remote else "unknown"
        self.logger.info(f"Accepted new connection from {remote_str}")

        if not await self.admission.acquire():
            self.logger.warning(f"{remote_str}: No free connection slot, rejecting")
            await self._respond(writer, ERROR_OUT_OF_RESOURCES.encode())
            return

        task = asyncio.current_task()
        self.workers.add(task)
        try:
            await self._serve_connection(reader, writer, remote_str)
        except asyncio.CancelledError:
            writer.close()
            raise
        except Exception:
            self.logger.exception(f"{remote_str}: Unexpected error handling request")
            writer.close()
        finally:
            self.workers.discard(task)
            self.admission.release()

    async def _serve_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, remote: str):
        try:
            data = await reader.readline()
        except (ValueError, asyncio.LimitOverrunError, ConnectionError) as e:
            self.logger.warning(f"{remote}: Error reading: {e}")
            writer.close()
            return

        if not data:
            self.logger.warning(f"{remote}: Connection closed before a request was read")
            writer.close()
            return

        line = data.rstrip(b"\r\n").decode("utf-8", errors="replace")
        command = parse_command(line)
        response = await self.dispatch(command, remote)
        await self._respond(writer, response)

    async def dispatch(self, command: Command, remote: str) -> bytes:
        """Maps a classified command to its response bytes; empty means close without a body."""
        if isinstance(command, HelpCommand):
            self.logger.debug(f"{remote}: Request help")
            return HELP_USAGE.encode()

        if isinstance(command, AsnLookupCommand):
            self.logger.debug(f"{remote}: Request ASN lookup for AS{command.asn}, not supported")
            return b""

        if isinstance(command, PrefixLookupCommand):
            self.logger.debug(f"{remote}: Request IP prefix lookup ({command.address})")
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self.executor, self.prefix_handler.process, command, remote)

        line = command.line if isinstance(command, InvalidCommand) else ""
        self.logger.info(f"{remote}: Received ({line}) is invalid")
        return (ERROR_INVALID_REQUEST + HELP_USAGE).encode()

    async def _respond(self, writer: asyncio.StreamWriter, response: bytes):
        try:
            if response:
                writer.write(response)
                await writer.drain()
        except OSError as e:
            self.logger.warning(f"Error writing response: {e}")
        finally:
            writer.close()

    def request_shutdown(self, sig: Optional[signal.Signals] = None):
        if sig is not None:
            self.logger.info(f"Program exiting by signal {sig.name}")
        if self._shutdown is not None:
            self._shutdown.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                self.logger.debug(f"Cannot install handler for {sig.name}")

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                pass

    async def start(self, install_signals: bool = True):
        srv = self.config.server
        self._shutdown = asyncio.Event()
        self.admission = AdmissionController(srv.max_connections, srv.slot_wait_timeout)

        self.logger.info(f"Starting OpenBMP whois daemon using port {srv.port}")
        try:
            self.server = await asyncio.start_server(self.handle_client, srv.host, srv.port, limit=srv.read_limit)
        except OSError as e:
            self.logger.error(f"Cannot listen on {srv.host}:{srv.port}: {e}")
            raise StartupError(str(e)) from e

        if install_signals:
            self._install_signal_handlers(asyncio.get_running_loop())

        self.logger.info(f"Whois server listening on {self.server.sockets[0].getsockname()}")

    async def stop(self) -> int:
        """Stops accepting, gives in-flight workers the grace period, then abandons them.

        Returns the number of workers that were still running.
        """
        self._remove_signal_handlers(asyncio.get_running_loop())
        if self.server is not None:
            self.server.close()

        if self.workers:
            await asyncio.sleep(self.config.server.shutdown_grace)

        abandoned = len(self.workers)
        if abandoned:
            self.logger.warning(f"Abandoning {abandoned} in-flight connections")
        pending = list(self.workers)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        self.executor.shutdown(wait=False, cancel_futures=True)
        close = getattr(self.store, "close", None)
        if close is not None:
            close()
        return abandoned

    async def serve(self, install_signals: bool = True) -> int:
        """Runs until shutdown is requested; returns the count of abandoned workers."""
        await self.start(install_signals=install_signals)
        await self._shutdown.wait()
        return await self.stop()
