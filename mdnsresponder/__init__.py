"""Multicast DNS building blocks: wire format, interfaces, cache, services, responder and control API."""

__version__ = "0.1.0"