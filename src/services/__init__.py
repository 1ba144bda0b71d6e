"""Service adapters for storage, queues and external models."""
