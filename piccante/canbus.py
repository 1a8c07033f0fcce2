"""CAN bus controller: per-bus settings, frame queues and persisted configuration."""

from __future__ import annotations

import queue
import struct
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, ClassVar, Optional

from piccante.logger import Logger

MAX_BUSSES = 3
DEFAULT_BUS_SPEED = 500000
DEFAULT_QUEUE_SIZE = 32
QUEUE_TIMEOUT_MS = 10

CAN_ID_RTR = 1 << 30
CAN_ID_EFF = 1 << 31

_MAX_DLC = 8
_SETTINGS_SLOTS = 3
_LOCK_TIMEOUT_S = 0.1
_MASK32 = 0xFFFFFFFF

Transmit = Callable[[int, "CanMessage"], bool]


class CanBusError(Exception):
    """Raised when a bus operation is invalid or cannot be carried out."""


@dataclass
class CanMessage:
    """A classic CAN frame; ``id`` carries the EFF/RTR flag bits."""

    id: int = 0
    dlc: int = 0
    data: bytes = b""

    def __post_init__(self) -> None:
        self.data = bytes(self.data)
        if len(self.data) > _MAX_DLC:
            raise ValueError(f"CAN frame data is at most {_MAX_DLC} bytes")
        if not 0 <= self.dlc <= _MAX_DLC:
            raise ValueError(f"CAN frame dlc must be 0-{_MAX_DLC}, got {self.dlc}")

    @property
    def is_extended(self) -> bool:
        return bool(self.id & CAN_ID_EFF)

    @property
    def is_remote(self) -> bool:
        return bool(self.id & CAN_ID_RTR)

    @property
    def arbitration_id(self) -> int:
        """The identifier without the flag bits."""
        return self.id & ~(CAN_ID_EFF | CAN_ID_RTR) & _MASK32

    @property
    def payload(self) -> bytes:
        """Exactly ``dlc`` data bytes, zero-filled where data is short."""
        return self.data[: self.dlc].ljust(self.dlc, b"\x00")


@dataclass
class BusSettings:
    """The packed 6-byte per-bus record: enabled, listen_only, bitrate (LE32)."""

    enabled: bool = False
    listen_only: bool = False
    bitrate: int = 0

    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<??I")
    SIZE: ClassVar[int] = 6

    def to_bytes(self) -> bytes:
        return self._FORMAT.pack(
            bool(self.enabled), bool(self.listen_only), self.bitrate & _MASK32
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> BusSettings:
        enabled, listen_only, bitrate = cls._FORMAT.unpack(bytes(data)[: cls.SIZE])
        return cls(enabled=enabled, listen_only=listen_only, bitrate=bitrate)


@dataclass
class CanStats:
    rx_total: int = 0
    tx_total: int = 0
    tx_attempt: int = 0
    parse_error: int = 0


_RECORD_SIZE = 1 + _SETTINGS_SLOTS * BusSettings.SIZE


def _encode_record(num_busses: int, buses: list[BusSettings]) -> bytes:
    return bytes((num_busses & 0xFF,)) + b"".join(b.to_bytes() for b in buses)


def _decode_record(data: bytes) -> tuple[int, list[BusSettings]]:
    buses = [
        BusSettings.from_bytes(data[start : start + BusSettings.SIZE])
        for start in range(1, _RECORD_SIZE, BusSettings.SIZE)
    ]
    return data[0], buses


class CanController:
    """Manages up to ``num_busses`` CAN buses and their stored settings.

    Outgoing frames are queued by :meth:`send` and handed to ``transmit`` by
    :meth:`process_tx`; incoming frames arrive through :meth:`deliver`.
    """

    def __init__(
        self,
        settings_path: str | Path,
        num_busses: int = MAX_BUSSES,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        logger: Optional[Logger] = None,
        transmit: Optional[Transmit] = None,
    ):
        if not 1 <= num_busses <= MAX_BUSSES:
            raise ValueError(f"num_busses must be 1-{MAX_BUSSES}, got {num_busses}")
        if queue_size <= 0:
            raise ValueError(f"queue_size must be positive, got {queue_size}")
        self.settings_path = Path(settings_path)
        self.max_busses = num_busses
        self.logger = logger if logger is not None else Logger()
        self._transmit = transmit
        self._num_busses = 0
        self._buses = [BusSettings() for _ in range(_SETTINGS_SLOTS)]
        self._rx: list[queue.Queue[CanMessage]] = [
            queue.Queue(maxsize=queue_size) for _ in range(num_busses)
        ]
        self._tx: list[queue.Queue[CanMessage]] = [
            queue.Queue(maxsize=queue_size) for _ in range(num_busses)
        ]
        self._running: list[Optional[int]] = [None] * num_busses
        self._stats = [CanStats() for _ in range(num_busses)]
        self._overflows = [0] * num_busses
        self._overflow_lock = threading.Lock()
        self._settings_lock = threading.Lock()

    @property
    def num_busses(self) -> int:
        """The number of buses currently configured for use."""
        return self._num_busses

    # -- internal helpers -------------------------------------------------

    def _bus_in_range(self, bus: int) -> bool:
        return 0 <= bus < self.max_busses

    def _bus_valid(self, bus: int) -> bool:
        return self._bus_in_range(bus) and bus < self._num_busses

    def _check_bus(self, bus: int) -> None:
        if not self._bus_valid(bus):
            raise CanBusError(f"Invalid CAN bus number: {bus}")

    def _check_bus_range(self, bus: int) -> None:
        if not self._bus_in_range(bus):
            raise CanBusError(f"Invalid CAN bus number: {bus}")

    def _setup(self, bus: int, bitrate: int) -> None:
        self._running[bus] = bitrate

    def _stop(self, bus: int) -> None:
        self._running[bus] = None

    def _transmit_frame(self, bus: int, msg: CanMessage) -> bool:
        if self._running[bus] is None:
            return False
        self._stats[bus].tx_attempt += 1
        ok = True if self._transmit is None else bool(self._transmit(bus, msg))
        if ok:
            self._stats[bus].tx_total += 1
        return ok

    # -- persistence ------------------------------------------------------

    def load_settings(self) -> bool:
        """Read stored settings and start every enabled bus."""
        try:
            data = self.settings_path.read_bytes()
        except OSError:
            self.logger.error("Failed to read CAN settings file\n")
            return False
        current = _encode_record(self._num_busses, self._buses)
        merged = data[:_RECORD_SIZE] + current[len(data):]
        self._num_busses, self._buses = _decode_record(merged)
        for bus in range(min(self._num_busses, self.max_busses)):
            config = self._buses[bus]
            if config.enabled:
                self.logger.info(
                    f"Enabling CAN bus {bus} with bitrate {config.bitrate}"
                    " from stored settings\n"
                )
                self._setup(bus, config.bitrate)
        return True

    def store_settings(self) -> bool:
        """Write the settings record; return False (after logging) on failure."""
        self.logger.debug("Storing CAN settings...\n")
        if not self._settings_lock.acquire(timeout=_LOCK_TIMEOUT_S):
            self.logger.error("Failed to take settings mutex for store_settings\n")
            return False
        try:
            self.settings_path.parent.mkdir(parents=True, exist_ok=True)
            self.settings_path.write_bytes(_encode_record(self._num_busses, self._buses))
        except OSError:
            self.logger.error("Failed to write CAN settings file\n")
            return False
        finally:
            self._settings_lock.release()
        return True

    # -- frame traffic ----------------------------------------------------

    def send(self, bus: int, msg: CanMessage) -> None:
        """Queue ``msg`` for transmission on ``bus``."""
        self._check_bus(bus)
        config = self._buses[bus]
        if not config.enabled:
            raise CanBusError(f"CAN bus {bus} is not enabled")
        if config.listen_only:
            raise CanBusError(f"CAN bus {bus} is in listen-only mode")
        try:
            self._tx[bus].put(msg, timeout=QUEUE_TIMEOUT_MS / 1000)
        except queue.Full:
            raise CanBusError(f"CAN bus {bus}: TX queue full") from None

    def receive(self, bus: int) -> Optional[CanMessage]:
        """Take the oldest received frame from ``bus``, or None if there is none."""
        self._check_bus(bus)
        try:
            return self._rx[bus].get_nowait()
        except queue.Empty:
            return None

    def deliver(self, bus: int, msg: CanMessage) -> bool:
        """Hand a frame received on ``bus`` to its RX queue.

        Frames for a stopped bus are ignored; a full queue counts an overflow.
        """
        self._check_bus_range(bus)
        if self._running[bus] is None:
            return False
        self._stats[bus].rx_total += 1
        try:
            self._rx[bus].put_nowait(msg)
        except queue.Full:
            with self._overflow_lock:
                self._overflows[bus] += 1
            return False
        return True

    def process_tx(self) -> int:
        """Transmit every queued frame; return how many were taken from the queues."""
        handled = 0
        for bus, tx in enumerate(self._tx):
            while True:
                try:
                    msg = tx.get_nowait()
                except queue.Empty:
                    break
                handled += 1
                if not self._transmit_frame(bus, msg):
                    self.logger.error(f"CAN{bus}: Failed to send message\n")
        return handled

    def rx_buffered(self, bus: int) -> int:
        self._check_bus_range(bus)
        return self._rx[bus].qsize()

    def tx_buffered(self, bus: int) -> int:
        self._check_bus_range(bus)
        return self._tx[bus].qsize()

    def rx_overflow_count(self, bus: int) -> int:
        if not self._bus_in_range(bus):
            return 0
        return self._overflows[bus]

    def statistics(self, bus: int) -> CanStats:
        self._check_bus_range(bus)
        return replace(self._stats[bus])

    # -- configuration ----------------------------------------------------

    def set_num_busses(self, num_busses: int) -> None:
        if not 0 <= num_busses <= self.max_busses:
            raise CanBusError(f"Invalid number of CAN buses: {num_busses}")
        self._num_busses = num_busses
        self.store_settings()

    def enable(self, bus: int, bitrate: int) -> None:
        self._check_bus(bus)
        config = self._buses[bus]
        if config.enabled:
            self.logger.warning(f"CAN bus {bus} is already enabled - resetting\n")
            self.set_bitrate(bus, bitrate)
            return
        self._setup(bus, bitrate)
        config.bitrate = bitrate
        config.enabled = True
        self.store_settings()

    def disable(self, bus: int) -> None:
        """Stop the bus; the stored enabled flag is kept as it was."""
        self._check_bus(bus)
        self._stop(bus)
        config = self._buses[bus]
        if not config.enabled:
            config.enabled = False
            self.store_settings()

    def set_bitrate(self, bus: int, bitrate: int) -> None:
        self._check_bus(bus)
        config = self._buses[bus]
        if config.enabled:
            self._stop(bus)
            self._setup(bus, bitrate)
            config.enabled = True
        if config.bitrate != bitrate:
            config.bitrate = bitrate
            self.store_settings()

    def is_enabled(self, bus: int) -> bool:
        if not self._bus_valid(bus):
            self.logger.error(f"Invalid CAN bus number: {bus}\n")
            return False
        return self._buses[bus].enabled

    def get_bitrate(self, bus: int) -> int:
        if not self._bus_valid(bus):
            self.logger.error(f"Invalid CAN bus number: {bus}\n")
            return DEFAULT_BUS_SPEED
        return self._buses[bus].bitrate

    def is_listen_only(self, bus: int) -> bool:
        if not self._bus_valid(bus):
            self.logger.error(f"Invalid CAN bus number: {bus}\n")
            return False
        return self._buses[bus].listen_only

    def set_listen_only(self, bus: int, listen_only: bool) -> None:
        self._check_bus(bus)
        config = self._buses[bus]
        if config.listen_only == listen_only:
            return
        config.listen_only = listen_only
        self.store_settings()