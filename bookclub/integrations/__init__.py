"""Clients for collaborators outside the entitlement subsystem."""
