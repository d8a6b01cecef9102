"""
capgate

Capability-scoped authorization gateway and deployment orchestrator for
untrusted subjects sharing a compute backend.
"""

__version__ = "0.1.0"
