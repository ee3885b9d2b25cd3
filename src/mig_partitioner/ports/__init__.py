"""Ports: inbound API and outbound driver interfaces."""
