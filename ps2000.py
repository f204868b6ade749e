#!/usr/bin/env python3
"""
Elektro-Automatik PS 2000 B Power Supply - Python API

Object numbers, telegram layout and error codes follow the EA PS 2000 B
programming guide (telegram protocol over USB serial).

Requires: pyserial (`pip install pyserial`)
"""

import logging
import struct
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import serial

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants - telegram structure
# ---------------------------------------------------------------------------
PS_QUERY = 0x40
PS_SEND = 0xC0

SD_BASE = 0x30  # start delimiter, before kind and payload length
MAX_PAYLOAD = 16  # payload length is carried in the low nibble of SD
MIN_RESPONSE = 5  # SD, DN, OBJ/0xFF, error code, checksum (2)
ERROR_OBJECT = 0xFF

DEFAULT_NODE = 0
DEFAULT_BAUD = 115200

# Device needs this long to answer; not a timeout
SETTLE_DELAY = 0.025  # 25 ms

# Raw setpoints are percent of nominal: 25600 == 100.00 %
FULL_SCALE = 25600
RAW_MAX = 0x7FFF

# ---------------------------------------------------------------------------
# Object table
# ---------------------------------------------------------------------------
OBJ_DEVICE_TYPE = 0
OBJ_SERIAL = 1
OBJ_NOMINAL_VOLTAGE = 2
OBJ_NOMINAL_CURRENT = 3
OBJ_NOMINAL_POWER = 4
OBJ_ARTICLE = 6
OBJ_MANUFACTURER = 8
OBJ_SW_VERSION = 9
OBJ_DEVICE_CLASS = 19
OBJ_OVP_THRESHOLD = 38
OBJ_OCP_THRESHOLD = 39
OBJ_VOLTAGE_SET = 50
OBJ_CURRENT_SET = 51
OBJ_CONTROL = 54
OBJ_ACTUAL = 71

# Object 54 mask/data bits
CTRL_REMOTE = 0x10
CTRL_OUTPUT = 0x01

# Object 71, byte 0: access mode (bits 0-1)
STATUS_ACCESS_MASK = 0x03
STATUS_ACCESS_REMOTE = 0x01

# Object 71, byte 1: device state
STATE_OUTPUT_ON = 0x01
STATE_CONTROL_MASK = 0x06  # 00 = CV, 10 = CC
STATE_CONTROL_CC = 0x04
STATE_OVP = 0x08
STATE_OCP = 0x10
STATE_OPP = 0x20
STATE_OTP = 0x40


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------
class PS2000Error(Exception):
    """Base error for this library."""


class TransportError(PS2000Error):
    """The serial line could not be opened, written or read."""


class NotConnectedError(PS2000Error):
    pass


class ProtocolError(PS2000Error):
    """Frame-level failure, independent of what the device reported."""


class TruncatedError(ProtocolError):
    pass


class ChecksumMismatchError(ProtocolError):
    pass


class EncodingError(ProtocolError):
    """A telegram could not be built from the given fields."""


class DeviceFault(PS2000Error):
    """Error code reported by the device in an answer telegram."""

    code = 0
    description = "device fault"

    def __init__(self, code: Optional[int] = None):
        if code is not None:
            self.code = code
        super().__init__(f"{self.description} (error 0x{self.code:02X})")


class ChecksumIncorrect(DeviceFault):
    code = 0x03
    description = "checksum incorrect"


class StartDelimiterIncorrect(DeviceFault):
    code = 0x04
    description = "start delimiter incorrect"


class WrongOutputAddress(DeviceFault):
    code = 0x05
    description = "wrong address for output"


class ObjectNotDefined(DeviceFault):
    code = 0x07
    description = "object not defined"


class ObjectLengthIncorrect(DeviceFault):
    code = 0x08
    description = "object length incorrect"


class AccessDenied(DeviceFault):
    code = 0x09
    description = "access denied"


class DeviceLocked(DeviceFault):
    code = 0x0F
    description = "device is locked"


class UpperLimitExceeded(DeviceFault):
    code = 0x30
    description = "upper limit exceeded"


class LowerLimitExceeded(DeviceFault):
    code = 0x31
    description = "lower limit exceeded"


class UnknownFault(DeviceFault):
    description = "unknown device error"


DEVICE_FAULTS = {
    cls.code: cls
    for cls in (
        ChecksumIncorrect,
        StartDelimiterIncorrect,
        WrongOutputAddress,
        ObjectNotDefined,
        ObjectLengthIncorrect,
        AccessDenied,
        DeviceLocked,
        UpperLimitExceeded,
        LowerLimitExceeded,
    )
}


# ---------------------------------------------------------------------------
# Telegram helpers
# ---------------------------------------------------------------------------
def checksum(data: bytes) -> int:
    """16-bit additive checksum, wrapping."""
    return sum(data) & 0xFFFF


def append_checksum(data: bytes) -> bytes:
    """Return data followed by its big-endian checksum."""
    return bytes(data) + struct.pack(">H", checksum(data))


def strip_checksum(frame: bytes) -> bytes:
    return frame[:-2]


def build_telegram(kind: int, node: int, obj: int, payload: bytes = b"") -> bytes:
    """Build a telegram: SD | DN | OBJ | payload | CS_hi | CS_lo.

    The payload length is folded into the start delimiter, so at most 16
    bytes can be carried.
    """
    if len(payload) > MAX_PAYLOAD:
        raise EncodingError(
            f"payload of {len(payload)} bytes exceeds {MAX_PAYLOAD}-byte limit"
        )
    sd = SD_BASE + kind
    if payload:
        sd += len(payload) - 1
    try:
        header = bytes([sd, node, obj])
    except ValueError as e:
        raise EncodingError(
            f"cannot encode SD=0x{sd:X} node={node} obj={obj}: {e}"
        ) from e
    return append_checksum(header + bytes(payload))


def decode_and_validate(raw: bytes) -> bytes:
    """Check length and checksum of an answer telegram.

    Returns ``raw`` unchanged so callers can slice header and payload.
    """
    if len(raw) < MIN_RESPONSE:
        raise TruncatedError(
            f"answer has {len(raw)} bytes, expected at least {MIN_RESPONSE}"
        )
    expected = checksum(raw[:-2])
    received = (raw[-2] << 8) | raw[-1]
    if expected != received:
        raise ChecksumMismatchError(
            f"checksum mismatch: computed 0x{expected:04X}, received 0x{received:04X}"
        )
    return raw


def check_error(ans: bytes) -> None:
    """Raise the DeviceFault carried by an error telegram, if any."""
    if ans[2] != ERROR_OBJECT:
        return
    code = ans[3]
    if code == 0x00:
        return
    fault = DEVICE_FAULTS.get(code)
    if fault is None:
        raise UnknownFault(code)
    raise fault()


def scale_to_physical(raw: int, nominal: float) -> float:
    """Convert a raw register value (25600 == 100 %) to volts or amps."""
    return nominal * raw / FULL_SCALE


def scale_to_raw(value: float, nominal: float) -> int:
    """Convert volts or amps to a raw register value."""
    if nominal <= 0:
        raise ValueError(f"nominal value must be positive, got {nominal}")
    raw = round(value * FULL_SCALE / nominal)
    if raw < 0 or raw > RAW_MAX:
        raise ValueError(
            f"{value} out of range for nominal {nominal} (raw {raw})"
        )
    return raw


def format_bytes(data: bytes) -> str:
    return "-".join(f"{b:02X}" for b in data)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------
class Transport(Protocol):
    """Byte stream the session talks through."""

    def open(self) -> None: ...

    def close(self) -> None: ...

    def write(self, data: bytes) -> None: ...

    def read_available(self) -> bytes: ...


class SerialTransport:
    """pyserial-backed transport. PS 2000 B uses 115200 baud, odd parity."""

    def __init__(self, port: str, baud: int = DEFAULT_BAUD, timeout: float = 1.0):
        self._port = port
        self._baud = baud
        self._timeout = timeout
        self._ser: Optional[serial.Serial] = None

    @property
    def port(self) -> str:
        return self._port

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    def open(self):
        try:
            self._ser = serial.Serial(
                self._port, self._baud,
                bytesize=serial.EIGHTBITS, parity=serial.PARITY_ODD,
                stopbits=serial.STOPBITS_ONE, timeout=self._timeout,
            )
        except serial.SerialException as e:
            raise TransportError(f"cannot open {self._port}: {e}") from e
        # Flush stale data
        self._ser.read(self._ser.in_waiting or 0)

    def close(self):
        if self._ser and self._ser.is_open:
            self._ser.close()
        self._ser = None

    def write(self, data: bytes):
        if not self.is_open:
            raise TransportError(f"{self._port} is not open")
        try:
            self._ser.write(data)
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"write to {self._port} failed: {e}") from e

    def read_available(self) -> bytes:
        """Read whatever is buffered, without waiting for more."""
        if not self.is_open:
            raise TransportError(f"{self._port} is not open")
        try:
            return self._ser.read(self._ser.in_waiting or 0)
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"read from {self._port} failed: {e}") from e


# ---------------------------------------------------------------------------
# Result structures
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ControlState:
    remote: bool
    output: bool


@dataclass(frozen=True)
class ActualState:
    """Decoded object 71: device state flags plus actual output values."""

    remote: bool
    local: bool
    on: bool
    cc: bool
    cv: bool
    ovp: bool
    ocp: bool
    opp: bool
    otp: bool
    voltage: float
    current: float


# ---------------------------------------------------------------------------
# PS2000 class
# ---------------------------------------------------------------------------
class PS2000:
    """Python API for the EA PS 2000 B power supply series.

    Usage::

        with PS2000.from_port("/dev/ttyACM0") as psu:
            psu.set_voltage(12.0)
            psu.set_current(1.5)
            psu.set_output(True)
            print(psu.get_actual())

    Entering the context reads the nominal ratings and switches the device
    to remote control; leaving it hands control back and closes the port.
    """

    def __init__(
        self,
        transport: Transport,
        node: int = DEFAULT_NODE,
        diagnostics: Optional[Callable[[str, bytes], None]] = None,
    ):
        self._transport = transport
        self._node = node
        self._diagnostics = diagnostics

        # Calibration (populated on connect)
        self._u_nom: Optional[float] = None
        self._i_nom: Optional[float] = None

    @classmethod
    def from_port(
        cls,
        port: str,
        baud: int = DEFAULT_BAUD,
        timeout: float = 1.0,
        diagnostics: Optional[Callable[[str, bytes], None]] = None,
    ) -> "PS2000":
        return cls(SerialTransport(port, baud, timeout), diagnostics=diagnostics)

    # -- Properties ----------------------------------------------------------

    @property
    def nominal_voltage(self) -> Optional[float]:
        return self._u_nom

    @property
    def nominal_current(self) -> Optional[float]:
        return self._i_nom

    @property
    def connected(self) -> bool:
        return self._u_nom is not None and self._i_nom is not None

    # -- Context manager -----------------------------------------------------

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False

    # -- Connection lifecycle ------------------------------------------------

    def connect(self):
        """Open the transport and initialize the session.

        1. Open the transport
        2. Read nominal voltage and current (needed for all scaling)
        3. Switch the device to remote control
        """
        self._transport.open()
        try:
            u_nom = self.get_nominal_voltage()
            i_nom = self.get_nominal_current()
            self._u_nom, self._i_nom = u_nom, i_nom
            if not self.set_remote(True):
                logger.warning("Remote control request was not acknowledged")
        except BaseException:
            self._u_nom = self._i_nom = None
            self._transport.close()
            raise
        logger.info("Connected: nominal %.2f V / %.2f A", self._u_nom, self._i_nom)

    def disconnect(self):
        """Release remote control, then close the transport."""
        if not self.connected:
            return
        try:
            if not self.set_remote(False):
                logger.warning("Remote release was not acknowledged")
        except PS2000Error as e:
            logger.warning("Could not release remote control: %s", e)
            raise
        finally:
            self._u_nom = self._i_nom = None
            self._transport.close()
        logger.info("Disconnected")

    def _require_connection(self):
        if not self.connected:
            raise NotConnectedError("Not connected. Call connect() first.")

    # -- Low-level I/O -------------------------------------------------------

    def _trace(self, direction: str, data: bytes):
        if self._diagnostics is not None:
            self._diagnostics(direction, data)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("%s: %s", direction, format_bytes(data))

    def exchange(self, kind: int, obj: int, payload: bytes = b"") -> bytes:
        """Send one telegram, wait for the device, receive and check the answer."""
        telegram = build_telegram(kind, self._node, obj, payload)
        self._trace("telegram", telegram)
        self._transport.write(telegram)
        time.sleep(SETTLE_DELAY)
        ans = self._transport.read_available()
        self._trace("answer", ans)
        decode_and_validate(ans)
        check_error(ans)
        return ans

    # -- Typed values --------------------------------------------------------

    def get_binary(self, obj: int) -> bytes:
        ans = self.exchange(PS_QUERY, obj)
        return ans[3:-2]

    def set_binary(self, obj: int, mask: int, data: int) -> bytes:
        ans = self.exchange(PS_SEND, obj, bytes([mask, data]))
        return ans[3:-2]

    def get_string(self, obj: int) -> str:
        """Strings are null-terminated; the terminator is dropped."""
        ans = self.exchange(PS_QUERY, obj)
        return ans[3:-3].decode("utf-8")

    def get_float(self, obj: int) -> float:
        """Floats arrive byte-reversed relative to big-endian IEEE 754."""
        ans = self.exchange(PS_QUERY, obj)
        data = ans[3:-2]
        if len(data) != 4:
            raise ProtocolError(
                f"object {obj}: expected 4 float bytes, got {len(data)}"
            )
        return struct.unpack(">f", data[::-1])[0]

    def get_integer(self, obj: int) -> int:
        ans = self.exchange(PS_QUERY, obj)
        return (ans[3] << 8) | ans[4]

    def set_integer(self, obj: int, value: int) -> int:
        if not 0 <= value <= 0xFFFF:
            raise EncodingError(f"object {obj}: {value} does not fit 16 bits")
        ans = self.exchange(PS_SEND, obj, struct.pack(">H", value))
        return (ans[3] << 8) | ans[4]

    # -- Device information --------------------------------------------------

    def get_device_type(self) -> str:
        return self.get_string(OBJ_DEVICE_TYPE)

    def get_serial(self) -> str:
        return self.get_string(OBJ_SERIAL)

    def get_nominal_voltage(self) -> float:
        return self.get_float(OBJ_NOMINAL_VOLTAGE)

    def get_nominal_current(self) -> float:
        return self.get_float(OBJ_NOMINAL_CURRENT)

    def get_nominal_power(self) -> float:
        return self.get_float(OBJ_NOMINAL_POWER)

    def get_article(self) -> str:
        return self.get_string(OBJ_ARTICLE)

    def get_manufacturer(self) -> str:
        return self.get_string(OBJ_MANUFACTURER)

    def get_version(self) -> str:
        return self.get_string(OBJ_SW_VERSION)

    def get_device_class(self) -> int:
        return self.get_integer(OBJ_DEVICE_CLASS)

    # -- Scaled values -------------------------------------------------------

    def _get_scaled(self, obj: int, nominal: Optional[float]) -> float:
        self._require_connection()
        return scale_to_physical(self.get_integer(obj), nominal)

    def _set_scaled(self, obj: int, value: float, nominal: Optional[float]) -> int:
        self._require_connection()
        return self.set_integer(obj, scale_to_raw(value, nominal))

    def get_ovp_threshold(self) -> float:
        """Over-voltage protection threshold in volts."""
        return self._get_scaled(OBJ_OVP_THRESHOLD, self._u_nom)

    def set_ovp_threshold(self, volts: float) -> int:
        return self._set_scaled(OBJ_OVP_THRESHOLD, volts, self._u_nom)

    def get_ocp_threshold(self) -> float:
        """Over-current protection threshold in amps."""
        return self._get_scaled(OBJ_OCP_THRESHOLD, self._i_nom)

    def set_ocp_threshold(self, amps: float) -> int:
        return self._set_scaled(OBJ_OCP_THRESHOLD, amps, self._i_nom)

    def get_voltage_setpoint(self) -> float:
        return self._get_scaled(OBJ_VOLTAGE_SET, self._u_nom)

    def set_voltage(self, volts: float) -> int:
        """Set the voltage setpoint. Returns the raw value the device acknowledged."""
        return self._set_scaled(OBJ_VOLTAGE_SET, volts, self._u_nom)

    def get_current_setpoint(self) -> float:
        return self._get_scaled(OBJ_CURRENT_SET, self._i_nom)

    def set_current(self, amps: float) -> int:
        """Set the current limit. Returns the raw value the device acknowledged."""
        return self._set_scaled(OBJ_CURRENT_SET, amps, self._i_nom)

    # -- Control (object 54) -------------------------------------------------

    def get_control(self) -> ControlState:
        ans = self.get_binary(OBJ_CONTROL)
        return ControlState(
            remote=bool(ans[0] & STATUS_ACCESS_REMOTE),
            output=bool(ans[1] & STATE_OUTPUT_ON),
        )

    def _set_control(self, mask: int, data: int) -> bool:
        ans = self.exchange(PS_SEND, OBJ_CONTROL, bytes([mask, data]))
        # acknowledged with "error 0"
        return ans[2] == ERROR_OBJECT and ans[3] == 0x00

    def get_remote(self) -> bool:
        return self.get_control().remote

    def set_remote(self, remote: bool) -> bool:
        return self._set_control(CTRL_REMOTE, CTRL_REMOTE if remote else 0x00)

    def get_output(self) -> bool:
        return self.get_control().output

    def set_output(self, output: bool) -> bool:
        return self._set_control(CTRL_OUTPUT, CTRL_OUTPUT if output else 0x00)

    # -- Actual values (object 71) -------------------------------------------

    def get_actual(self) -> ActualState:
        """Read device state and actual output voltage/current.

        Byte 0 holds the access mode, byte 1 the device state, bytes 2-3 and
        4-5 the actual voltage and current as raw values.
        """
        self._require_connection()
        ans = self.get_binary(OBJ_ACTUAL)
        remote = (ans[0] & STATUS_ACCESS_MASK) == STATUS_ACCESS_REMOTE
        state = ans[1]
        cc = (state & STATE_CONTROL_MASK) == STATE_CONTROL_CC
        return ActualState(
            remote=remote,
            local=not remote,
            on=bool(state & STATE_OUTPUT_ON),
            cc=cc,
            cv=not cc,
            ovp=bool(state & STATE_OVP),
            ocp=bool(state & STATE_OCP),
            opp=bool(state & STATE_OPP),
            otp=bool(state & STATE_OTP),
            voltage=scale_to_physical((ans[2] << 8) | ans[3], self._u_nom),
            current=scale_to_physical((ans[4] << 8) | ans[5], self._i_nom),
        )

    def get_actual_voltage(self) -> float:
        return self.get_actual().voltage

    def get_actual_current(self) -> float:
        return self.get_actual().current
