"""SLCAN (CAN232/LAWICEL) ASCII protocol handler, with the V2 extended mode."""

from __future__ import annotations

import re
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional, TextIO, Union

from piccante.canbus import CanBusError, CanMessage
from piccante.logger import Logger
from piccante.util import parse_hex

if TYPE_CHECKING:
    from piccante.canbus import CanController

Clock = Callable[[], int]

NUM_BUSES = 1
BUS_NAME = "CAN0"
VERSION_REPLY = "V1013\n"
SERIAL_REPLY = "PiCCANTE\n"
STATUS_REPLY = "F00"
OK = "\r"
ERROR = "\a"
COMMAND_BUFFER_SIZE = 64

BUS_SPEEDS = (10000, 20000, 50000, 100000, 125000, 250000, 500000, 750000, 1000000)

_MAX_DLC = 8
_MASK32 = 0xFFFFFFFF
_INT_MAX = 2**31 - 1
_INT_MIN = -(2**31)
_LEADING_INT = re.compile(r"-?\d+")
_HEX_DIGITS = "0123456789abcdef"


class ShortCommand(str, Enum):
    OPEN = "O"
    CLOSE = "C"
    OPEN_LISTEN_ONLY = "L"
    POLL_ONE = "P"
    POLL_ALL = "A"
    READ_STATUS_BITS = "F"
    GET_VERSION = "V"
    GET_SERIAL = "N"
    SET_EXTENDED_MODE = "x"
    LIST_SUPPORTED_BUSSES = "B"
    FIRMWARE_UPGRADE = "X"


class LongCommand(str, Enum):
    TX_STANDARD_FRAME = "t"
    TX_EXTENDED_FRAME = "T"
    SET_SPEED_OR_PACKET = "S"
    SET_CANBUS_BAUDRATE = "s"
    SEND_RTR_FRAME = "r"
    SET_RECEIVE_TRAFFIC = "R"
    SET_AUTOPOLL = "A"
    SET_FILTER_MODE = "W"
    SET_ACCEPTENCE_MASK = "m"
    SET_FILTER_MASK = "M"
    HALT_RECEPTION = "H"
    SET_UART_SPEED = "U"
    TOGGLE_TIMESTAMP = "Z"
    TOGGLE_TIMESTAMP_ALT = "Y"
    TOGGLE_AUTO_START = "Q"
    CONFIGURE_BUS = "C"


def _monotonic_ms() -> int:
    return time.monotonic_ns() // 1_000_000


def _char_at(text: str, index: int) -> str:
    return text[index] if index < len(text) else "\0"


def _digit(char: str, upper: int) -> int:
    return min(max(ord(char) - ord("0"), 0), upper)


def _parse_int(text: str) -> Optional[int]:
    """Parse a leading decimal integer; None if there is none or it overflows."""
    match = _LEADING_INT.match(text)
    if match is None:
        return None
    value = int(match.group())
    if not _INT_MIN <= value <= _INT_MAX:
        return None
    return value


class SlcanHandler:
    """Handles SLCAN commands from a host for one CAN bus.

    Replies and received frames are written as text to ``out``; ``clock``
    returns the current time in milliseconds.
    """

    def __init__(
        self,
        out: TextIO,
        can: CanController,
        bus: int = 0,
        clock: Optional[Clock] = None,
        logger: Optional[Logger] = None,
    ):
        self._out = out
        self._can = can
        self.bus = bus
        self._clock = clock if clock is not None else _monotonic_ms
        self.logger = logger if logger is not None else can.logger
        self.extended_mode = False
        self.auto_poll = True
        self.time_stamping = False
        self.poll_counter = 0
        self._buffer: list[str] = []

    # -- output helpers ---------------------------------------------------

    def _write(self, text: str) -> None:
        self._out.write(text)

    def _flush(self) -> None:
        self._out.flush()

    def _reply(self, text: str) -> None:
        self._write(text)
        self._flush()

    def _print_bus_name(self) -> None:
        self._reply(BUS_NAME + "\n")

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except CanBusError as exc:
            self.logger.error(f"{exc}\n")
            return None

    def _open(self, listen_only: bool) -> None:
        self._call(self._can.enable, self.bus, self._can.get_bitrate(self.bus))
        self._call(self._can.set_listen_only, self.bus, listen_only)

    def _send(self, frame: CanMessage) -> None:
        self._call(self._can.send, self.bus, frame)

    # -- commands ---------------------------------------------------------

    def handle_short_cmd(self, cmd: str) -> None:
        """Handle a one-character command."""
        self.logger.debug(f"SLCAN Short Command:{cmd}\n")
        try:
            command = ShortCommand(cmd)
        except ValueError:
            self.logger.error(f"Unknown command:{cmd}\n")
            return

        if command is ShortCommand.OPEN:
            self._open(False)
            self._reply(OK)
        elif command is ShortCommand.CLOSE:
            self._call(self._can.disable, self.bus)
            self._reply(OK)
        elif command is ShortCommand.OPEN_LISTEN_ONLY:
            self._open(True)
            self._reply(OK)
        elif command is ShortCommand.POLL_ONE:
            self.poll_counter += 1
        elif command is ShortCommand.POLL_ALL:
            buffered = self._call(self._can.rx_buffered, 0)
            self.poll_counter = buffered if buffered is not None else 0
            if self.poll_counter == 0:
                self._reply(OK)
        elif command is ShortCommand.READ_STATUS_BITS:
            self._reply(STATUS_REPLY + OK)
        elif command is ShortCommand.GET_VERSION:
            self._reply(VERSION_REPLY)
        elif command is ShortCommand.GET_SERIAL:
            self._reply(SERIAL_REPLY)
        elif command is ShortCommand.SET_EXTENDED_MODE:
            self.extended_mode = not self.extended_mode
            self._reply("V2\n" if self.extended_mode else "SLCAN\n")
        elif command is ShortCommand.LIST_SUPPORTED_BUSSES:
            if self.extended_mode:
                for _ in range(NUM_BUSES):
                    self._print_bus_name()
                    self._reply(OK)
        elif command is ShortCommand.FIRMWARE_UPGRADE:
            self._reply(ERROR)

    def _tx_frame(self, cmd: str, id_len: int, poll_reply: str) -> None:
        frame_id = parse_hex(cmd[1 : 1 + id_len])
        dlc = _digit(_char_at(cmd, 1 + id_len), _MAX_DLC)
        start = 2 + id_len
        data = bytes(
            parse_hex(cmd[start + 2 * i : start + 2 * i + 2]) for i in range(dlc)
        )
        self._send(CanMessage(id=frame_id, dlc=dlc, data=data))
        if self.auto_poll:
            self._write(poll_reply)

    def _check_bus_name(self, tokens: list[str]) -> bool:
        if len(tokens) > 1 and tokens[1] != BUS_NAME:
            self._write("Unknown bus\n")
            return False
        return True

    def _send_packet(self, cmd: str) -> bool:
        tokens = cmd.split(" ")
        if not self._check_bus_name(tokens):
            return False
        if len(tokens) < 3:
            self._write("Missing CAN ID\n")
            return False
        frame_id = parse_hex(tokens[2])
        if len(tokens) < 4 or not tokens[3]:
            self._write("No data bytes provided\n")
            return False
        data_hex = tokens[3]
        num_bytes = min(_MAX_DLC, len(data_hex) // 2)
        data = bytes(parse_hex(data_hex[2 * i : 2 * i + 2]) for i in range(num_bytes))
        self._send(CanMessage(id=frame_id, dlc=num_bytes, data=data))
        if self.auto_poll:
            self._write("z")
        return True

    def _configure_bus(self, cmd: str) -> bool:
        tokens = cmd.split(" ")
        if not self._check_bus_name(tokens):
            return False
        if len(tokens) > 2:
            speed = _parse_int(tokens[2])
            if speed is None or speed <= 0:
                self._write("Invalid speed\n")
                return False
            self._call(self._can.set_bitrate, self.bus, speed)
        return True

    def handle_long_cmd(self, cmd: str) -> None:
        """Handle a command of two or more characters."""
        self.logger.debug(f"SLCAN Long Command:{cmd}\n")
        try:
            command = LongCommand(cmd[0])
        except ValueError:
            self.logger.error(f"Unknown command: {cmd}\n")
            command = None

        if command is LongCommand.TX_STANDARD_FRAME:
            self._tx_frame(cmd, 3, "z")
        elif command is LongCommand.TX_EXTENDED_FRAME:
            self._tx_frame(cmd, 8, "Z")
        elif command is LongCommand.SET_SPEED_OR_PACKET:
            if self.extended_mode:
                if not self._send_packet(cmd):
                    return
            else:
                speed = BUS_SPEEDS[_digit(cmd[1], len(BUS_SPEEDS) - 1)]
                self._call(self._can.set_bitrate, self.bus, speed)
        elif command is LongCommand.SET_RECEIVE_TRAFFIC:
            if self.extended_mode:
                self._call(
                    self._can.enable, self.bus, self._can.get_bitrate(self.bus)
                )
        elif command is LongCommand.SET_AUTOPOLL:
            self.auto_poll = cmd[1] == "1"
        elif command is LongCommand.HALT_RECEPTION:
            if self.extended_mode:
                self._call(self._can.disable, self.bus)
        elif command in (LongCommand.TOGGLE_TIMESTAMP, LongCommand.TOGGLE_TIMESTAMP_ALT):
            self.time_stamping = cmd[1] in ("1", "2")
        elif command is LongCommand.CONFIGURE_BUS:
            if self.extended_mode and not self._configure_bus(cmd):
                return
        # The remaining commands are accepted without effect.
        self._reply(OK)

    def handle_command(self, cmd: str) -> None:
        """Dispatch a complete command line (without its terminator)."""
        if not cmd:
            return
        if len(cmd) < 2:
            self.handle_short_cmd(cmd[0])
        else:
            self.handle_long_cmd(cmd)

    # -- frames from the bus ----------------------------------------------

    def comm_can_frame(self, frame: CanMessage) -> None:
        """Report a received frame to the host, honouring polling mode."""
        millis = int(self._clock()) & _MASK32

        if not self.auto_poll:
            if self.poll_counter > 0:
                self.poll_counter -= 1
            else:
                return

        frame_id = frame.arbitration_id
        if self.extended_mode:
            self._write(f"{millis} - {frame_id:x}")
            self._write(" X " if frame.is_extended else " S ")
            self._print_bus_name()
            for byte in frame.payload:
                self._write(f" {byte:x}")
        else:
            if frame.is_extended:
                text = "T" + "".join(
                    _HEX_DIGITS[(frame_id >> shift) & 0xF] for shift in range(28, -1, -4)
                )
            else:
                text = "t" + "".join(
                    _HEX_DIGITS[(frame_id >> shift) & 0xF] for shift in (8, 4, 0)
                )
            text += chr(ord("0") + frame.dlc)
            text += "".join(
                _HEX_DIGITS[(b >> 4) & 0xF] + _HEX_DIGITS[b & 0xF] for b in frame.payload
            )
            self._write(text)
            if self.time_stamping:
                self._write(f"{millis:04x}")
        self._reply(OK)

    # -- input ------------------------------------------------------------

    def feed(self, data: Union[str, bytes]) -> None:
        """Feed raw host input; each CR or LF ends a command line.

        Characters beyond the command buffer's capacity are dropped.
        """
        if isinstance(data, (bytes, bytearray)):
            data = bytes(data).decode("latin-1")
        for char in data:
            if char in ("\r", "\n"):
                self.handle_command("".join(self._buffer))
                self._buffer.clear()
            elif len(self._buffer) < COMMAND_BUFFER_SIZE:
                self._buffer.append(char)