"""
Access decisions: entitlement engine, route guard, menu filter, and the
session facade and HTTP surfaces that expose them.
"""
