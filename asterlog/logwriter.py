"""
Capture Log Writer.

Appends captured payloads to a log file that rotates by size and by age. In
DEBUG mode each payload becomes one JSON line carrying its source, a printable
encoding of the bytes and, when the payload looks like ASTERIX, the decoded
message.
"""

import base64
import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .config import DEFAULT_MAX_LOG_SIZE, DEFAULT_ROTATION_INTERVAL, BinaryEncoding, LogLevel

logger = logging.getLogger("asterlog.logwriter")

ROTATED_SUFFIX_FORMAT = "%Y%m%d-%H%M%S"


@dataclass
class LogEntry:
    timestamp: str
    source_ip: str
    source_port: int
    protocol: str
    payload: str
    payload_len: int
    encoding: str  # ascii, utf8, base64 or hex
    asterix: Optional[Dict[str, Any]] = None

    def to_json(self) -> str:
        data = asdict(self)
        if data["asterix"] is None:
            del data["asterix"]
        return json.dumps(data)


def encode_hex(payload: bytes) -> str:
    """Hexdump-style byte pairs without offsets, e.g. '00 01 0a'."""
    return payload.hex(" ")


def encode_binary(payload: bytes, binary_encoding: BinaryEncoding) -> Tuple[str, str]:
    if binary_encoding == BinaryEncoding.HEX:
        return encode_hex(payload), "hex"
    return base64.b64encode(payload).decode("ascii"), "base64"


def encode_payload(payload: bytes, binary_encoding: BinaryEncoding = BinaryEncoding.BASE64) -> Tuple[str, str]:
    """Picks a printable representation for a payload.

    Returns:
        (text, encoding) where encoding is "ascii", "utf8", "base64" or "hex".
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        return encode_binary(payload, binary_encoding)

    for b in payload:
        if b >= 128:
            return text, "utf8"
        # printable ASCII plus tab, LF and CR
        if b < 32 and b not in (9, 10, 13):
            return encode_binary(payload, binary_encoding)

    return text, "ascii"


class RotatingLogWriter:
    """Appends capture records to a file, rotating it by size and age.

    Rotation renames the current file to `<filename>.<YYYYmmdd-HHMMSS>`, adding
    a `.1`, `.2`, ... counter when that name exists, and starts a fresh one.
    Safe to share between threads.
    """

    def __init__(self, filename: str, log_level: LogLevel = LogLevel.DEBUG,
                 binary_encoding: BinaryEncoding = BinaryEncoding.BASE64,
                 max_size: int = DEFAULT_MAX_LOG_SIZE,
                 rotation_interval: float = DEFAULT_ROTATION_INTERVAL):
        self.filename = filename
        self.log_level = log_level
        self.binary_encoding = binary_encoding
        self.max_size = max_size
        self.rotation_interval = rotation_interval
        self.current_size = 0
        self.last_rotation = time.time()
        self._file = None
        self._lock = threading.Lock()
        self._open_existing()

    def _ensure_directory(self):
        directory = os.path.dirname(self.filename)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _open_existing(self):
        """Opens the log in append mode, keeping what a previous run wrote."""
        self._ensure_directory()
        try:
            stat = os.stat(self.filename)
        except FileNotFoundError:
            stat = None

        self._file = open(self.filename, "ab")
        if stat is not None:
            self.current_size = stat.st_size
            self.last_rotation = stat.st_mtime
            if self.current_size >= self.max_size:
                self._rotate()
        else:
            self.current_size = 0
            self.last_rotation = time.time()

    def _rotated_name(self) -> str:
        """`<filename>.<stamp>`, then `.1`, `.2`, ... when that name is taken."""
        base = f"{self.filename}.{datetime.now().strftime(ROTATED_SUFFIX_FORMAT)}"
        rotated = base
        counter = 0
        while os.path.exists(rotated):
            counter += 1
            rotated = f"{base}.{counter}"
        return rotated

    def _rotate(self):
        if self._file is not None:
            self._file.close()
            self._file = None

        self._ensure_directory()
        if os.path.exists(self.filename):
            rotated = self._rotated_name()
            os.rename(self.filename, rotated)
            logger.info(f"Rotated {self.filename} -> {rotated}")

        self._file = open(self.filename, "ab")
        self.current_size = 0
        self.last_rotation = time.time()

    def rotate_if_due(self) -> bool:
        """Rotates when the file is older than the rotation interval."""
        with self._lock:
            if self._file is None or time.time() - self.last_rotation < self.rotation_interval:
                return False
            self._rotate()
            return True

    def build_entry(self, source_ip: str, source_port: int, protocol: str, payload: bytes,
                    asterix: Optional[Dict[str, Any]] = None) -> LogEntry:
        text, encoding = encode_payload(payload, self.binary_encoding)
        return LogEntry(
            timestamp=datetime.now().astimezone().isoformat(timespec="seconds"),
            source_ip=source_ip,
            source_port=source_port,
            protocol=protocol,
            payload=text,
            payload_len=len(payload),
            encoding=encoding,
            asterix=asterix,
        )

    def log_data(self, source_ip: str, source_port: int, protocol: str, payload: bytes,
                 asterix: Optional[Dict[str, Any]] = None):
        """Writes one payload according to the configured log level.

        Raises:
            OSError: If the write or a size-triggered rotation fails.
        """
        if self.log_level == LogLevel.DATA:
            record = payload + b"\n"
        else:
            entry = self.build_entry(source_ip, source_port, protocol, payload, asterix)
            record = entry.to_json().encode("utf-8") + b"\n"

        with self._lock:
            if self._file is None:
                raise OSError(f"log file {self.filename} is closed")
            self._file.write(record)
            self._file.flush()
            self.current_size += len(record)

            if self.current_size >= self.max_size:
                self._rotate()

    def close(self):
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
