"""Dispatch engine building blocks (policy, rendering, store, provider, fan-out)."""
