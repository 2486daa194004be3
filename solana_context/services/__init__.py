"""Network services: JSON-RPC transport and transaction confirmation."""
