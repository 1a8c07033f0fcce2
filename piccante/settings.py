"""Persistent system and WiFi settings."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import ClassVar

from piccante.logger import Level, Logger

SETTINGS_FILENAME = "system_settings"
WIFI_DATA_FILENAME = "wifi_data"

_WIFI_BUFFER_SIZE = 128
_LOCK_TIMEOUT_S = 0.1
_TEXT_ENCODING = "utf-8"
_TEXT_ERRORS = "surrogateescape"


class LedMode(IntEnum):
    OFF = 0
    POWER = 1
    CAN = 2


class SettingsError(Exception):
    """Raised when stored settings data cannot be decoded."""


def _led_mode(value: int) -> LedMode | int:
    try:
        return LedMode(value)
    except ValueError:
        return value


@dataclass
class SystemSettings:
    """The packed 5-byte system settings record."""

    echo: bool = True
    log_level: int = int(Level.INFO)
    led_mode: LedMode | int = LedMode.CAN
    wifi_mode: int = 0
    idle_sleep_minutes: int = 0

    SIZE: ClassVar[int] = 5

    def to_bytes(self) -> bytes:
        return bytes(
            (
                1 if self.echo else 0,
                self.log_level & 0xFF,
                int(self.led_mode) & 0xFF,
                self.wifi_mode & 0xFF,
                self.idle_sleep_minutes & 0xFF,
            )
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> SystemSettings:
        """Decode a record; fields missing from short data keep their defaults."""
        data = bytes(data)
        if not data:
            raise SettingsError("empty system settings data")
        raw = data[: cls.SIZE] + cls().to_bytes()[len(data):]
        echo, log_level, led_mode, wifi_mode, idle = raw
        return cls(
            echo=echo != 0,
            log_level=log_level,
            led_mode=_led_mode(led_mode),
            wifi_mode=wifi_mode,
            idle_sleep_minutes=idle,
        )


@dataclass
class TelnetSettings:
    port: int = 0
    enabled: bool = False


@dataclass
class WifiSettings:
    ssid: str = ""
    password: str = ""
    channel: int = 1
    telnet: TelnetSettings = field(default_factory=TelnetSettings)


def encode_wifi(wifi: WifiSettings) -> bytes:
    """Encode as: channel, ssid, NUL, password, NUL, port (LE16), enabled."""
    return b"".join(
        (
            bytes((wifi.channel & 0xFF,)),
            wifi.ssid.encode(_TEXT_ENCODING, _TEXT_ERRORS),
            b"\x00",
            wifi.password.encode(_TEXT_ENCODING, _TEXT_ERRORS),
            b"\x00",
            bytes(
                (
                    wifi.telnet.port & 0xFF,
                    (wifi.telnet.port >> 8) & 0xFF,
                    1 if wifi.telnet.enabled else 0,
                )
            ),
        )
    )


def decode_wifi(data: bytes) -> WifiSettings:
    """Decode data written by :func:`encode_wifi`; only the first 128 bytes count."""
    buf = bytes(data)[:_WIFI_BUFFER_SIZE]
    if not buf:
        raise SettingsError("empty wifi settings data")
    ssid_end = buf.find(0, 1)
    if ssid_end < 0:
        raise SettingsError("missing SSID terminator")
    password_end = buf.find(0, ssid_end + 1)
    if password_end < 0:
        raise SettingsError("missing password terminator")
    tail = buf[password_end + 1 : password_end + 4].ljust(3, b"\x00")
    return WifiSettings(
        ssid=buf[1:ssid_end].decode(_TEXT_ENCODING, _TEXT_ERRORS),
        password=buf[ssid_end + 1 : password_end].decode(_TEXT_ENCODING, _TEXT_ERRORS),
        channel=buf[0],
        telnet=TelnetSettings(port=tail[0] | (tail[1] << 8), enabled=tail[2] != 0),
    )


class SettingsStore:
    """Holds the live settings and persists them as files in ``directory``."""

    def __init__(self, directory: str | Path, logger: Logger | None = None):
        self.directory = Path(directory)
        self.logger = logger if logger is not None else Logger()
        self.settings = SystemSettings()
        self.wifi = WifiSettings()
        self._lock = threading.Lock()
        self._loaded = False

    @property
    def settings_path(self) -> Path:
        return self.directory / SETTINGS_FILENAME

    @property
    def wifi_path(self) -> Path:
        return self.directory / WIFI_DATA_FILENAME

    def load(self) -> bool:
        """Read both files; return False (after logging) on any failure."""
        try:
            data = self.settings_path.read_bytes()
        except OSError:
            data = b""
        if not data:
            self.logger.error("Failed to read system settings file\n")
            return False
        current = self.settings.to_bytes()
        self.settings = SystemSettings.from_bytes(
            data[: SystemSettings.SIZE] + current[len(data):]
        )

        try:
            wifi_data = self.wifi_path.read_bytes()
        except OSError:
            wifi_data = b""
        if not wifi_data:
            self.logger.error("Failed to read wifi settings file\n")
            return False
        try:
            self.wifi = decode_wifi(wifi_data)
        except SettingsError as exc:
            self.logger.error(f"Invalid wifi settings file: {exc}\n")
            return False
        self.logger.debug(f"Loaded SSID: '{self.wifi.ssid}'\n")

        self._loaded = True
        return True

    def get(self) -> SystemSettings:
        """Return the settings, loading them on first use."""
        if not self._loaded and not self.load():
            self.logger.error("Failed to load system settings\n")
        return self.settings

    def store(self) -> bool:
        """Write both files; the result reflects the WiFi file write."""
        if not self._lock.acquire(timeout=_LOCK_TIMEOUT_S):
            self.logger.error("Failed to take settings mutex\n")
            return False
        try:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                self.settings_path.write_bytes(self.settings.to_bytes())
            except OSError:
                self.logger.error("Failed to write system settings file\n")

            success = False
            try:
                self.logger.debug(
                    f"Storing SSID: '{self.wifi.ssid}', size={len(self.wifi.ssid)}\n"
                )
                self.wifi_path.write_bytes(encode_wifi(self.wifi))
                success = True
            except OSError:
                self.logger.error("Failed to write wifi settings file\n")
        finally:
            self._lock.release()
        return success

    def set_log_level(self, level: Level | int) -> None:
        level = Level(level)
        self.settings.log_level = int(level)
        self.logger.set_level(level)

    def set_led_mode(self, mode: LedMode | int) -> None:
        self.settings.led_mode = LedMode(mode)