"""Shared fixtures for PS 2000 B tests."""

import struct
from unittest.mock import patch

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from ps2000 import (
    PS2000,
    PS_SEND,
    ERROR_OBJECT,
    CTRL_REMOTE,
    CTRL_OUTPUT,
    FULL_SCALE,
    OBJ_DEVICE_TYPE,
    OBJ_SERIAL,
    OBJ_NOMINAL_VOLTAGE,
    OBJ_NOMINAL_CURRENT,
    OBJ_NOMINAL_POWER,
    OBJ_ARTICLE,
    OBJ_MANUFACTURER,
    OBJ_SW_VERSION,
    OBJ_DEVICE_CLASS,
    OBJ_OVP_THRESHOLD,
    OBJ_OCP_THRESHOLD,
    OBJ_VOLTAGE_SET,
    OBJ_CURRENT_SET,
    OBJ_CONTROL,
    OBJ_ACTUAL,
    append_checksum,
    decode_and_validate,
)

# Direction bits the device sets in the SD of its answers
ANSWER_SD = 0x80 | 0x30

LOCKED_OBJECTS = {OBJ_OVP_THRESHOLD, OBJ_OCP_THRESHOLD, OBJ_VOLTAGE_SET, OBJ_CURRENT_SET}


def make_answer(obj, payload=b""):
    """Build a device answer telegram with a valid checksum."""
    sd = ANSWER_SD + (len(payload) - 1 if payload else 0)
    return append_checksum(bytes([sd, 0x00, obj]) + bytes(payload))


def make_error(code):
    """Build an error telegram: object 0xFF carrying an error code."""
    return append_checksum(bytes([ANSWER_SD, 0x00, ERROR_OBJECT, code]))


class FakePS2000Transport:
    """Simulated PS 2000 B 2042-20 on the other end of the serial line.

    Answers queries and sends the way the device does and refuses access to
    setpoints and thresholds while it is not in remote mode. ``next_answer``
    replaces the next answer verbatim, for corruption and truncation tests.
    """

    def __init__(self):
        self.is_open = False
        self.open_calls = 0
        self.close_calls = 0
        self.written = []
        self.next_answer = None
        self.fail_objects = {}  # obj -> error code to report

        self.strings = {
            OBJ_DEVICE_TYPE: "PS 2042-20 B",
            OBJ_SERIAL: "1234560042",
            OBJ_ARTICLE: "39200112",
            OBJ_MANUFACTURER: "EA Elektro-Automatik",
            OBJ_SW_VERSION: "V2.01 09.08.06",
        }
        self.floats = {
            OBJ_NOMINAL_VOLTAGE: 42.0,
            OBJ_NOMINAL_CURRENT: 20.0,
            OBJ_NOMINAL_POWER: 320.0,
        }
        self.integers = {
            OBJ_DEVICE_CLASS: 0x0010,
            OBJ_OVP_THRESHOLD: 28160,  # 110 %
            OBJ_OCP_THRESHOLD: 28160,
            OBJ_VOLTAGE_SET: 0,
            OBJ_CURRENT_SET: 0,
        }
        self.remote = False
        self.output = False
        self.actual_voltage = 0
        self.actual_current = 0
        self.status_byte1 = 0x00

        self._buffer = b""

    # -- Transport interface -------------------------------------------------

    def open(self):
        self.is_open = True
        self.open_calls += 1

    def close(self):
        self.is_open = False
        self.close_calls += 1

    def write(self, data):
        self.written.append(bytes(data))
        if self.next_answer is not None:
            self._buffer += self.next_answer
            self.next_answer = None
        else:
            self._buffer += self._answer(bytes(data))

    def read_available(self):
        data, self._buffer = self._buffer, b""
        return data

    # -- Device behaviour ----------------------------------------------------

    def _answer(self, telegram):
        try:
            decode_and_validate(telegram)
        except Exception:
            return make_error(0x03)
        sd, obj, payload = telegram[0], telegram[2], telegram[3:-2]
        if obj in self.fail_objects:
            return make_error(self.fail_objects[obj])
        if obj in LOCKED_OBJECTS and not self.remote:
            return make_error(0x09)
        if sd & 0xC0 == PS_SEND:
            return self._write(obj, payload)
        return self._read(obj)

    def _read(self, obj):
        if obj in self.strings:
            return make_answer(obj, self.strings[obj].encode() + b"\x00")
        if obj in self.floats:
            return make_answer(obj, struct.pack("<f", self.floats[obj]))
        if obj in self.integers:
            return make_answer(obj, struct.pack(">H", self.integers[obj]))
        if obj == OBJ_CONTROL:
            return make_answer(obj, bytes([int(self.remote), int(self.output)]))
        if obj == OBJ_ACTUAL:
            status = bytes([0x01 if self.remote else 0x00,
                            self.status_byte1 | int(self.output)])
            return make_answer(
                obj,
                status + struct.pack(">HH", self.actual_voltage, self.actual_current),
            )
        return make_error(0x07)

    def _write(self, obj, payload):
        if len(payload) != 2:
            return make_error(0x08)
        if obj == OBJ_CONTROL:
            mask, data = payload
            if mask & CTRL_REMOTE:
                self.remote = bool(data & CTRL_REMOTE)
            if mask & CTRL_OUTPUT:
                if not self.remote:
                    return make_error(0x09)
                self.output = bool(data & CTRL_OUTPUT)
            return make_error(0x00)
        if obj in self.integers and obj != OBJ_DEVICE_CLASS:
            value = struct.unpack(">H", payload)[0]
            if value > FULL_SCALE * 11 // 10:
                return make_error(0x30)
            self.integers[obj] = value
            return make_answer(obj, payload)
        return make_error(0x09 if obj in self.integers else 0x07)


@pytest.fixture(autouse=True)
def no_settle_delay():
    """Skip the 25 ms settle delay; tests assert on the mock where needed."""
    with patch("ps2000.time.sleep") as sleep:
        yield sleep


@pytest.fixture
def fake_device():
    return FakePS2000Transport()


@pytest.fixture
def psu(fake_device):
    """A connected PS2000 session talking to the simulated device."""
    session = PS2000(fake_device)
    session.connect()
    return session
