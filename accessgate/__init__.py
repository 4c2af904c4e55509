"""
accessgate — access-control gate for a multi-tenant business application.

Decides, for every authenticated request to a protected capability,
whether to render it, redirect, or wait. Combines identity resolution,
tenant membership resolution (with bounded polling for just-provisioned
accounts) and a layered entitlement engine.
"""

__version__ = "1.0.0"
