"""Chain access - RPC providers, log decoding and contract reads."""
