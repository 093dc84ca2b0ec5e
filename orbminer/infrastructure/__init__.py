"""RPC-backed account readers."""
