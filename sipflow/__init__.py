"""Link-layer decoding, IP/TCP reassembly, WebSocket unwrapping and HEP/EEP for SIP traffic."""

__version__ = "1.8.2"