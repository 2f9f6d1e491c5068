"""
ethspeed - HTTP throughput measurement

A FastAPI server that streams and sinks caller-sized payloads, and an
httpx client that times them.
"""

__version__ = "1.0.0"
