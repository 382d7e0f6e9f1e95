"""Host-side driver for BLE-to-Modbus bridge dongles."""

__version__ = "0.1.0"
