"""Electrum protocol client: transport, typed queries and payload decoding."""
