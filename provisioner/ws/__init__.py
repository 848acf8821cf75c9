"""Relay socket protocol: request decoding, routing and a Python client."""
