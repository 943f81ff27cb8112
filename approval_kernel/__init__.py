"""
Approval Kernel

Decision core of a policy-driven, multi-stage approval workflow:
- Policy matching over request metrics
- Ordered stages gated by any / threshold / unanimous voting rules
- Per-principal capabilities with explicit denial reasons
- Tagged results at every module boundary
"""

__version__ = "0.1.0"
