"""
                Order Assignment Service

Order-to-staff assignment engine for a multi-tenant restaurant platform:
round-robin allocation with capacity limits, manager overrides, a daily
pointer reset and real-time notification fan-out.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
