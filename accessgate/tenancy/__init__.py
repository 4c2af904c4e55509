"""Tenancy: memberships, session storage and active-tenant resolution."""
