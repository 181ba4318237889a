import asyncio
import logging
import ssl
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from .config import ListenerConfig, Protocol
from .logwriter import RotatingLogWriter
from .protocols import AsterixParser

logger = logging.getLogger("asterlog.core")

READ_SIZE = 4096
ROTATION_CHECK_INTERVAL = 60  # seconds

@dataclass
class CaptureEvent:
    id: str
    listener_name: str
    protocol: str  # "TCP", "UDP" or "TLS"
    source_ip: str
    source_port: int
    payload_len: int
    data_hex: str
    semantic: str
    asterix: Optional[Dict[str, Any]]
    timestamp: float
    type: str = "packet"

@dataclass
class StatusEvent:
    local_port: int
    status: str  # "listening", "stopped"
    error_msg: Optional[str]
    type: str = "status"

class StateManager:
    """Singleton holding recent captures and broadcasting them to live subscribers."""
    def __init__(self):
        self.capture_log: deque = deque(maxlen=2000)
        self.subscribers: List[asyncio.Queue] = []
        self.active_listeners: Dict[int, ListenerConfig] = {}

    def register_listener(self, config: ListenerConfig):
        self.active_listeners[config.port] = config
        self.broadcast(StatusEvent(local_port=config.port, status="listening", error_msg=None))

    def unregister_listener(self, port: int):
        if self.active_listeners.pop(port, None) is not None:
            self.broadcast(StatusEvent(local_port=port, status="stopped", error_msg=None))

    def log_capture(self, config: ListenerConfig, source_ip: str, source_port: int, data: bytes,
                    asterix: Optional[Dict[str, Any]] = None, semantic: str = "") -> CaptureEvent:
        event = CaptureEvent(
            id=str(uuid.uuid4()),
            listener_name=config.name,
            protocol=config.protocol.value,
            source_ip=source_ip,
            source_port=source_port,
            payload_len=len(data),
            data_hex=data.hex(' '),
            semantic=semantic or f"<{len(data)} bytes>",
            asterix=asterix,
            timestamp=time.time(),
        )

        self.capture_log.append(event)
        self.broadcast(event)
        return event

    def broadcast(self, event):
        data = asdict(event)
        for q in self.subscribers:
            try:
                q.put_nowait(data)
            except asyncio.QueueFull:
                pass  # Drop event if subscriber is too slow

    async def subscribe(self) -> asyncio.Queue:
        q = asyncio.Queue(maxsize=100)
        self.subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        if q in self.subscribers:
            self.subscribers.remove(q)

state_manager = StateManager()

class BaseListener:
    """Receives payloads on one port and logs each of them."""
    def __init__(self, config: ListenerConfig):
        self.config = config
        self.writer = RotatingLogWriter(
            config.log_file,
            log_level=config.log_level,
            binary_encoding=config.binary_encoding,
            max_size=config.max_log_size,
            rotation_interval=config.rotation_interval,
        )
        # one worker keeps records in arrival order
        self._write_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"asterlog-{config.port}")

    def handle_payload(self, source_ip: str, source_port: int, data: bytes) -> CaptureEvent:
        protocol = self.config.protocol.value
        asterix = None
        semantic = ""
        if AsterixParser.is_asterix(data):
            message = AsterixParser.decode(data)
            asterix = message.to_dict()
            semantic = message.summary()

        self._write_executor.submit(self._write, source_ip, source_port, data, asterix)
        return state_manager.log_capture(self.config, source_ip, source_port, data, asterix, semantic)

    def _write(self, source_ip: str, source_port: int, data: bytes, asterix: Optional[Dict[str, Any]]):
        protocol = self.config.protocol.value
        try:
            self.writer.log_data(source_ip, source_port, protocol, data, asterix)
        except OSError as e:
            logger.error(f"Failed to log {protocol} data from {source_ip}:{source_port}: {e}")

    async def flush(self):
        """Waits until every payload handled so far is written to the log."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._write_executor, lambda: None)

    def release_writer(self):
        self._write_executor.shutdown(wait=True)
        self.writer.close()

    async def start(self):
        raise NotImplementedError

    async def close(self):
        await self.flush()
        self.release_writer()
        state_manager.unregister_listener(self.config.port)
        logger.info(f"{self.config.protocol.value} listener '{self.config.name}' stopped")

class TCPListener(BaseListener):
    def __init__(self, config: ListenerConfig):
        super().__init__(config)
        self.server = None

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        return None

    async def start(self):
        self.server = await asyncio.start_server(
            self.handle_client, '0.0.0.0', self.config.port, ssl=self._ssl_context()
        )
        state_manager.register_listener(self.config)
        logger.info(f"{self.config.protocol.value} listener started on port {self.config.port}, logging to {self.config.log_file}")

        # Keep serving in the background
        self.serve_task = asyncio.create_task(self.server.serve_forever())

    async def close(self):
        if self.server:
            self.server.close()
            await self.server.wait_closed()
        if hasattr(self, 'serve_task'):
            self.serve_task.cancel()
            try:
                await self.serve_task
            except asyncio.CancelledError:
                pass
        await super().close()

    async def handle_client(self, reader, writer):
        peer = writer.get_extra_info('peername') or ("unknown", 0)
        source_ip, source_port = peer[0], peer[1]
        logger.debug(f"[{self.config.name}] New connection from {source_ip}:{source_port}")

        try:
            while True:
                data = await reader.read(READ_SIZE)
                if not data:
                    break
                self.handle_payload(source_ip, source_port, data)
        except Exception as e:
            logger.debug(f"{self.config.protocol.value} read error from {source_ip}:{source_port}: {e}")
        finally:
            writer.close()

class TLSListener(TCPListener):
    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(self.config.tls_cert_file, self.config.tls_key_file)
        return context

class _DatagramCapture(asyncio.DatagramProtocol):
    def __init__(self, listener: "UDPListener"):
        self.listener = listener

    def datagram_received(self, data, addr):
        if data:
            self.listener.handle_payload(addr[0], addr[1], data)

    def error_received(self, exc):
        logger.debug(f"UDP read error on port {self.listener.config.port}: {exc}")

class UDPListener(BaseListener):
    def __init__(self, config: ListenerConfig):
        super().__init__(config)
        self.transport = None

    async def start(self):
        loop = asyncio.get_running_loop()
        self.transport, _ = await loop.create_datagram_endpoint(
            lambda: _DatagramCapture(self), local_addr=('0.0.0.0', self.config.port)
        )
        state_manager.register_listener(self.config)
        logger.info(f"UDP listener started on port {self.config.port}, logging to {self.config.log_file}")

    async def close(self):
        if self.transport:
            self.transport.close()
            self.transport = None
        await super().close()

LISTENER_TYPES = {
    Protocol.TCP: TCPListener,
    Protocol.TLS: TLSListener,
    Protocol.UDP: UDPListener,
}

class ListenerEngine:
    def __init__(self):
        self.listeners: List[BaseListener] = []
        self._rotation_task = None

    async def add_listener(self, config: ListenerConfig) -> str:
        listener = LISTENER_TYPES[config.protocol](config)
        try:
            await listener.start()
        except Exception:
            listener.release_writer()
            raise
        self.listeners.append(listener)
        return f"{config.protocol.value} listener '{config.name}' started on port {config.port}"

    async def remove_listener(self, port: int) -> str:
        for listener in self.listeners:
            if listener.config.port == port:
                await listener.close()
                self.listeners.remove(listener)
                return f"Listener on port {port} stopped"
        raise ValueError(f"No listener found on port {port}")

    async def stop_all_listeners(self):
        logger.info("Stopping all listeners...")
        if not self.listeners:
            return

        await asyncio.gather(*(listener.close() for listener in self.listeners), return_exceptions=True)
        self.listeners.clear()
        state_manager.active_listeners.clear()
        logger.info("All listeners stopped.")

    async def start_rotation_monitor(self):
        if self._rotation_task is None:
            self._rotation_task = asyncio.create_task(self._rotation_loop())

    async def stop_rotation_monitor(self):
        if self._rotation_task:
            self._rotation_task.cancel()
            try:
                await self._rotation_task
            except asyncio.CancelledError:
                pass
            except RuntimeError:
                # Task might be in another loop
                pass
            self._rotation_task = None

    async def shutdown(self):
        await self.stop_rotation_monitor()
        await self.stop_all_listeners()
        logger.info("Engine shutdown complete.")

    def check_rotation(self) -> int:
        """Rotates every log that has outlived its rotation interval."""
        rotated = 0
        for listener in self.listeners:
            if listener.writer.rotate_if_due():
                rotated += 1
        return rotated

    async def _rotation_loop(self):
        logger.info("Starting log rotation monitor")
        while True:
            try:
                await asyncio.sleep(ROTATION_CHECK_INTERVAL)
                self.check_rotation()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in rotation monitor: {e}")

engine = ListenerEngine()
