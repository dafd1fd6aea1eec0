"""Vehicle Agent -- real-time vehicle telemetry acquisition.

Selects a vehicle-bus transport (built-in bus, external ELM327-style
adapter, or simulation), decodes OBD-II responses and bus frames into
``Reading`` snapshots, reads and clears trouble codes, and records
readings to rotating CSV logs.
"""

__version__ = "0.1.0"
