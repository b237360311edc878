"""
FieldSync

Resilient request and synchronization client for field survey devices.
Records captured offline are kept in a local durable store and replayed
to the collection API once connectivity returns.
"""

__version__ = "1.0.0"
