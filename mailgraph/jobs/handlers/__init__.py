"""Job handlers, one module per domain."""
