# piccante

Tools for working with Controller Area Network buses from Python.

- `piccante.canbus` – `CanController` keeps per-bus settings (enabled,
  listen-only, bitrate), buffers received and outgoing frames in bounded
  queues, counts receive overflows and keeps transmit/receive statistics. Its
  configuration is saved to a small binary settings file. Frames are
  `CanMessage` objects; invalid operations raise `CanBusError`.
- `piccante.slcan` – `SlcanHandler` speaks the SLCAN / CAN232 ASCII protocol:
  open, close and listen-only open, single and bulk polling, `t`/`T` frame
  transmission, speed selection by index (`S0`–`S8`), autopoll and timestamp
  toggles, and the extended V2 commands (`x` to switch, bus listing, packet
  sending and bus configuration).
- `piccante.settings` – `SystemSettings` (a 5-byte record), `WifiSettings`
  with `encode_wifi` / `decode_wifi`, and `SettingsStore`, which loads and
  stores them as the files `system_settings` and `wifi_data` in a directory.
  Undecodable data raises `SettingsError`.
- `piccante.logger` – `Logger` writes text to a stream (standard error by
  default), drops messages below its `Level`, and prefixes every new output
  line with `[LEVEL] `.
- `piccante.util` – `parse_hex`, `parse_hex_char`, `pack_le` and `pack_be`.

## Quick look

```python
from piccante.util import parse_hex, pack_le, pack_be

parse_hex("DEADBEEF")      # 3735928559
pack_le(0x1234, 2)         # b"\x34\x12"
pack_be(0xDEAD, 2)         # b"\xde\xad"
```

```python
import io
from piccante.logger import Level, Logger

out = io.StringIO()
log = Logger(Level.INFO, out)
log.debug("hidden\n")
log.warning("bus 0 is already enabled\n")
out.getvalue()             # "[WARNING] bus 0 is already enabled\n"
```

## A bus and an SLCAN host

```python
import io
from pathlib import Path
from piccante.canbus import CanController, CanMessage
from piccante.slcan import SlcanHandler

can = CanController(Path("state") / "can_settings", num_busses=1)
can.set_num_busses(1)
can.enable(0, 500000)

host = io.StringIO()
slcan = SlcanHandler(host, can, bus=0, clock=lambda: 0)

slcan.feed("t1232AABB\r")  # queue a standard frame 0x123 with two data bytes
host.getvalue()            # "z\r"
can.tx_buffered(0)         # 1
can.process_tx()           # 1 frame handed to the transmit callable

slcan.comm_can_frame(CanMessage(id=0x321, dlc=1, data=b"\x01"))
host.getvalue()            # "z\rt321101\r"
```

`CanController` takes an optional `transmit(bus, msg) -> bool` callable that
`process_tx` uses to put frames on the wire; without one, frames on a running
bus count as sent. Frames received from a bus are handed in with
`deliver(bus, msg)` and taken out with `receive(bus)`.

## What is not included

- There is no hardware driver: the package talks to no CAN transceiver,
  serial port or USB device. Connect `transmit`, `deliver` and the handler's
  input and output streams to your own transport.
- There is no command-line program and no GVRET binary protocol handler; the
  `piccante.gvret` package is empty.

## Running the tests

Install the `test` extra and run `pytest` from the project root.