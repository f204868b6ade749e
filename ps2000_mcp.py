#!/usr/bin/env python3
"""
EA PS 2000 B MCP Server

Exposes a PS 2000 B power supply as MCP tools for LLM-driven control.

Requires: Python 3.10+, fastmcp (`pip install fastmcp`), pyserial

Run:
    python ps2000_mcp.py                      # stdio transport (default)
"""

import json
from typing import Optional

from fastmcp import FastMCP

from ps2000 import PS2000

mcp = FastMCP(
    "EA PS 2000 B Power Supply",
    instructions=(
        "Controls an Elektro-Automatik PS 2000 B DC power supply via USB "
        "serial. Always connect() first, then use other tools. While "
        "connected the device is in remote mode and its front panel is "
        "locked; disconnect() hands control back to the panel. Voltages and "
        "currents are converted against the device's nominal ratings, which "
        "read_info() reports."
    ),
)

# Global device handle - one connection at a time
_psu: Optional[PS2000] = None


def _require_connection() -> PS2000:
    if _psu is None:
        raise RuntimeError("Not connected. Call connect() first.")
    return _psu


def _fmt(value: float, decimals: int = 3) -> float:
    """Round a float for clean JSON output."""
    return round(value, decimals)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def connect(port: str) -> str:
    """Connect to the PS 2000 B power supply.

    Opens the serial port, reads the nominal voltage and current and
    switches the device to remote control.

    Args:
        port: Serial port path, e.g. "/dev/ttyACM0" (Linux) or "COM3" (Windows).
    """
    global _psu
    if _psu is not None:
        return json.dumps({"error": "Already connected. disconnect() first."})

    psu = PS2000.from_port(port)
    psu.connect()
    _psu = psu

    return json.dumps({
        "status": "connected",
        "nominal_voltage": _fmt(psu.nominal_voltage, 2),
        "nominal_current": _fmt(psu.nominal_current, 2),
    })


@mcp.tool()
def disconnect() -> str:
    """Disconnect from the power supply.

    Releases remote control so the front panel works again, then closes the
    serial port. The output is left as it is.
    """
    global _psu
    if _psu is None:
        return json.dumps({"status": "already disconnected"})

    psu, _psu = _psu, None
    psu.disconnect()
    return json.dumps({"status": "disconnected"})


@mcp.tool()
def read_info() -> str:
    """Read identification and nominal ratings of the device."""
    psu = _require_connection()
    return json.dumps({
        "device_type": psu.get_device_type(),
        "serial": psu.get_serial(),
        "article": psu.get_article(),
        "manufacturer": psu.get_manufacturer(),
        "version": psu.get_version(),
        "nominal_voltage": _fmt(psu.nominal_voltage, 2),
        "nominal_current": _fmt(psu.nominal_current, 2),
        "nominal_power": _fmt(psu.get_nominal_power(), 1),
    })


@mcp.tool()
def read_status() -> str:
    """Read setpoints, protection thresholds, actual values and state flags."""
    psu = _require_connection()
    actual = psu.get_actual()
    return json.dumps({
        "voltage_setpoint": _fmt(psu.get_voltage_setpoint(), 2),
        "current_setpoint": _fmt(psu.get_current_setpoint()),
        "ovp": _fmt(psu.get_ovp_threshold(), 2),
        "ocp": _fmt(psu.get_ocp_threshold()),
        "output_voltage": _fmt(actual.voltage, 2),
        "output_current": _fmt(actual.current),
        "output_on": actual.on,
        "remote": actual.remote,
        "mode": "CC" if actual.cc else "CV",
        "protection": {
            "ovp": actual.ovp,
            "ocp": actual.ocp,
            "opp": actual.opp,
            "otp": actual.otp,
        },
    })


@mcp.tool()
def set_voltage(volts: float) -> str:
    """Set the voltage setpoint (object 50).

    This only changes the setpoint - it does not enable the output.

    Args:
        volts: Desired voltage in volts (0 to nominal voltage).
    """
    psu = _require_connection()
    psu.set_voltage(volts)
    return json.dumps({"status": "ok", "voltage_setpoint": _fmt(volts, 3)})


@mcp.tool()
def set_current(amps: float) -> str:
    """Set the current limit (object 51).

    Args:
        amps: Desired current limit in amps (0 to nominal current).
    """
    psu = _require_connection()
    psu.set_current(amps)
    return json.dumps({"status": "ok", "current_setpoint": _fmt(amps, 3)})


@mcp.tool()
def output_on() -> str:
    """Enable the output with the configured setpoints."""
    psu = _require_connection()
    acked = psu.set_output(True)
    return json.dumps({"status": "ok" if acked else "not acknowledged", "output": "on"})


@mcp.tool()
def output_off() -> str:
    """Disable the output. Setpoints are preserved."""
    psu = _require_connection()
    acked = psu.set_output(False)
    return json.dumps({"status": "ok" if acked else "not acknowledged", "output": "off"})


@mcp.tool()
def set_ovp(volts: float) -> str:
    """Set the over-voltage protection threshold (object 38).

    Args:
        volts: OVP threshold in volts.
    """
    psu = _require_connection()
    psu.set_ovp_threshold(volts)
    return json.dumps({"status": "ok", "ovp": _fmt(volts, 2)})


@mcp.tool()
def set_ocp(amps: float) -> str:
    """Set the over-current protection threshold (object 39).

    Args:
        amps: OCP threshold in amps.
    """
    psu = _require_connection()
    psu.set_ocp_threshold(amps)
    return json.dumps({"status": "ok", "ocp": _fmt(amps, 3)})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    mcp.run()
