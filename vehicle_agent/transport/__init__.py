"""Vehicle-bus transport layer.

Provides the ``Transport`` ABC with three concrete variants:

* ``BuiltInBusTransport`` -- head-unit bus (device node or SocketCAN).
* ``ElmTransport``        -- external ELM327-style OBD-II adapter.
* ``SimulatedTransport``  -- fixture-based, no hardware required.
"""

from vehicle_agent.transport.base import Transport

__all__ = ["Transport"]
