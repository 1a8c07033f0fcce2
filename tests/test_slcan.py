import io
from types import SimpleNamespace

import pytest

from piccante.canbus import CAN_ID_EFF, CanController, CanMessage
from piccante.logger import Level, Logger
from piccante.slcan import BUS_SPEEDS, SlcanHandler


@pytest.fixture
def env(tmp_path):
    sent = []
    log_out = io.StringIO()
    logger = Logger(Level.INFO, log_out)

    def transmit(bus, msg):
        sent.append((bus, msg))
        return True

    can = CanController(
        tmp_path / "can_settings", num_busses=1, logger=logger, transmit=transmit
    )
    can.set_num_busses(1)
    out = io.StringIO()
    clock = {"now": 0}
    handler = SlcanHandler(out, can, 0, lambda: clock["now"], logger)
    return SimpleNamespace(
        can=can, out=out, handler=handler, sent=sent, log=log_out, clock=clock
    )


def _take(env):
    text = env.out.getvalue()
    env.out.seek(0)
    env.out.truncate()
    return text


def test_version_serial_status_and_firmware(env):
    env.handler.handle_command("V")
    assert _take(env) == "V1013\n"
    env.handler.handle_command("N")
    assert _take(env) == "PiCCANTE\n"
    env.handler.handle_command("F")
    assert _take(env) == "F00\r"
    env.handler.handle_command("X")
    assert _take(env) == "\a"


def test_extended_mode_toggles(env):
    env.handler.handle_command("x")
    assert _take(env) == "V2\n"
    assert env.handler.extended_mode is True
    env.handler.handle_command("x")
    assert _take(env) == "SLCAN\n"
    assert env.handler.extended_mode is False


def test_list_busses_only_in_extended_mode(env):
    env.handler.handle_command("B")
    assert _take(env) == ""
    env.handler.handle_command("x")
    _take(env)
    env.handler.handle_command("B")
    assert _take(env) == "CAN0\n\r"


def test_open_uses_speed_from_s_command(env):
    env.handler.handle_command("S6")
    assert _take(env) == "\r"
    assert env.can.get_bitrate(0) == BUS_SPEEDS[6]
    env.handler.handle_command("O")
    assert _take(env) == "\r"
    assert env.can.is_enabled(0)
    assert not env.can.is_listen_only(0)
    assert env.can.get_bitrate(0) == 500000


def test_speed_index_is_clamped(env):
    env.handler.handle_command("S9")
    assert env.can.get_bitrate(0) == BUS_SPEEDS[-1]


def test_open_listen_only(env):
    env.handler.handle_command("L")
    assert _take(env) == "\r"
    assert env.can.is_enabled(0)
    assert env.can.is_listen_only(0)


def test_standard_frame_round_trip(env):
    env.handler.handle_command("O")
    _take(env)
    command = "t12321122"
    env.handler.handle_command(command)
    assert _take(env) == "z\r"
    assert env.can.tx_buffered(0) == 1
    env.can.process_tx()
    bus, msg = env.sent[0]
    assert bus == 0
    assert msg.arbitration_id == 0x123
    assert msg.payload == bytes((0x11, 0x22))
    env.handler.comm_can_frame(msg)
    assert _take(env) == command + "\r"


def test_extended_tx_command_sends_frame(env):
    env.handler.handle_command("O")
    _take(env)
    env.handler.handle_command("T1ABCDEF02AABB")
    assert _take(env) == "Z\r"
    env.can.process_tx()
    _, msg = env.sent[0]
    assert msg.arbitration_id == 0x1ABCDEF0
    assert msg.payload == bytes((0xAA, 0xBB))


def test_frame_on_disabled_bus_is_logged(env):
    env.handler.handle_command("t1230")
    assert _take(env) == "z\r"
    assert env.can.tx_buffered(0) == 0
    assert "is not enabled" in env.log.getvalue()


def test_extended_frame_output(env):
    frame = CanMessage(id=CAN_ID_EFF | 0x1ABCDEF0, dlc=3, data=b"\xaa\xbb\xcc")
    env.handler.comm_can_frame(frame)
    assert _take(env) == "T1abcdef03aabbcc\r"


def test_timestamp_appended(env):
    env.handler.handle_command("Z1")
    _take(env)
    env.clock["now"] = 0x1234
    env.handler.comm_can_frame(CanMessage(id=0x7, dlc=0))
    text = _take(env)
    assert text.endswith("1234\r")
    assert text.startswith("t0070")


def test_autopoll_off_requires_poll(env):
    env.handler.handle_command("A0")
    _take(env)
    frame = CanMessage(id=0x10, dlc=1, data=b"\x01")
    env.handler.comm_can_frame(frame)
    assert _take(env) == ""
    env.handler.handle_command("P")
    env.handler.comm_can_frame(frame)
    assert _take(env).endswith("\r")
    env.handler.comm_can_frame(frame)
    assert _take(env) == ""


def test_poll_all_with_empty_queue(env):
    env.handler.handle_command("A")
    assert _take(env) == "\r"
    assert env.handler.poll_counter == 0


def test_extended_mode_frame_output(env):
    env.handler.handle_command("x")
    _take(env)
    env.clock["now"] = 42
    env.handler.comm_can_frame(CanMessage(id=0x123, dlc=2, data=b"\x11\x22"))
    assert _take(env) == "42 - 123 S CAN0\n 11 22\r"


def test_extended_packet_command(env):
    env.handler.handle_command("O")
    env.handler.handle_command("x")
    _take(env)
    env.handler.handle_command("S CAN0 7DF 0201")
    assert _take(env) == "z\r"
    env.can.process_tx()
    _, msg = env.sent[0]
    assert msg.arbitration_id == 0x7DF
    assert msg.payload == bytes((0x02, 0x01))


@pytest.mark.parametrize(
    "command, reply",
    [
        ("S CAN1 7DF 00", "Unknown bus\n"),
        ("S CAN0", "Missing CAN ID\n"),
        ("S CAN0 7DF", "No data bytes provided\n"),
        ("C CAN0 abc", "Invalid speed\n"),
        ("C CAN0 0", "Invalid speed\n"),
    ],
)
def test_extended_command_errors(env, command, reply):
    env.handler.handle_command("x")
    _take(env)
    env.handler.handle_command(command)
    assert _take(env) == reply


def test_configure_bus_sets_bitrate(env):
    env.handler.handle_command("x")
    _take(env)
    env.handler.handle_command("C CAN0 250000")
    assert _take(env) == "\r"
    assert env.can.get_bitrate(0) == 250000


def test_halt_reception_stops_bus(env):
    env.handler.handle_command("O")
    env.handler.handle_command("x")
    env.handler.handle_command("H1")
    assert env.can.deliver(0, CanMessage(id=1)) is False


def test_close_stops_bus(env):
    env.handler.handle_command("O")
    assert env.can.deliver(0, CanMessage(id=1)) is True
    env.handler.handle_command("C")
    assert env.can.deliver(0, CanMessage(id=1)) is False


def test_feed_splits_lines(env):
    env.handler.feed("V\rN\n")
    assert _take(env) == "V1013\nPiCCANTE\n"
    env.handler.feed(b"F")
    assert _take(env) == ""
    env.handler.feed(b"\r")
    assert _take(env) == "F00\r"


def test_feed_ignores_empty_lines(env):
    env.handler.feed("\r\n\r")
    assert _take(env) == ""


def test_unknown_short_command_is_logged(env):
    env.handler.handle_command("q")
    assert _take(env) == ""
    assert "Unknown command:q" in env.log.getvalue()


def test_unknown_long_command_still_acknowledged(env):
    env.handler.handle_command("qq")
    assert _take(env) == "\r"
    assert "Unknown command: qq" in env.log.getvalue()