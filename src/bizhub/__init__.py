"""Bizhub authentication, session and subscription-gating service.

Verifies identity provider credentials, tracks brute-force lockouts, issues
session tokens and gates each business vertical on the subject's entitlement.
"""

__version__ = "0.1.0"
