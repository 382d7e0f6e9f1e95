"""GATT session and UART transports."""
