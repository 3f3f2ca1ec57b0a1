"""
lspbridge - Language server process bridge.

Starts compiler-provided language servers (``gleam lsp`` being the reference
deployment) on demand and talks to them over their standard streams:
- Content-Length framing of JSON-RPC 2.0 messages
- Request/response correlation, cancellation and timeouts
- Crash detection with bounded, backed-off restarts
- A graceful shutdown handshake with a force-kill fallback

One server process is kept per (workspace root, language) pair.
"""

__version__ = "0.1.0"
