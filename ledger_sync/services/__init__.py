"""
External Services Package

Contains integrations with the systems a client talks to:
- Local storage (in-memory, SQLite)
- Remote transport (in-memory, shared directory)
"""
