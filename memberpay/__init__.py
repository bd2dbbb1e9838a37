"""
Membership payment orchestration.

Initiates payments with Orange Money, SAMA Money and CinetPay, reconciles
their callbacks, and activates the purchased entitlement exactly once.
"""

__version__ = "0.1.0"
