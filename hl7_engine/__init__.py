# hl7_engine/__init__.py
"""
HL7 v2.x interface engine: parse, validate, queue, process and acknowledge
inbound messages against a tenant-scoped clinical store.
"""

__version__ = "0.1.0"
