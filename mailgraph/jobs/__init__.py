"""Background job definitions: payloads, events and handlers."""
