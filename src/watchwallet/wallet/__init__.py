"""Wallet logic: keys, addresses, discovery, ledger and spending."""
