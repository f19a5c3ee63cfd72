"""Adapters connecting the device hub to concrete device integrations."""
