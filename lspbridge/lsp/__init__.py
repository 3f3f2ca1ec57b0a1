"""Language server process bridge.

Framing, request routing, process supervision and session management for
compiler-provided language servers spoken to over stdio.
"""
