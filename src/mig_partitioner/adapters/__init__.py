"""Adapters: driver implementations and client-facing surfaces."""
