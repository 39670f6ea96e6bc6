"""
hwtelemetry - host hardware telemetry streaming service.

Samples CPU, memory, GPU, fan, network and disk telemetry, pushes live
readings to WebSocket subscribers, records each reading in a SQLite time
series, and answers bounded history queries.
"""

__version__ = "0.1.0"
