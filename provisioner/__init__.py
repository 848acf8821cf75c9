"""SmartStart Provisioner: Z-Wave middleware relay.

Bridges WebSocket clients and a Z-Wave controller driver:
  - SmartStart provisioning entries keyed by DSK
  - Manufacturer Proprietary (CC 0x91) vendor payloads
  - Driver lifecycle gating and event broadcast

Quickstart::

    python -m provisioner --zwave-port ws://localhost:3000
    # clients connect to ws://localhost:3001/ws and send {"type": "START"}
"""

__version__ = "1.0.0"
