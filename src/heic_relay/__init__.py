"""
HEIC Relay package.

Converts pasted or dropped HEIC images to JPEG by relaying each request
through isolated contexts (page agent, dispatcher, relay host, converter
cell) that rendezvous on durable storage. A FastAPI surface is available in
`heic_relay.webapi`.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
