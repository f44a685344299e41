"""Job queue module: kombu transport, producer and prefetch-1 consumer."""
