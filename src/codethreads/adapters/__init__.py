"""Adapters around external processes: transport, stream protocol, environments."""
