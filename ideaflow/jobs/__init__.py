"""Job records, queue, progress events and the worker."""
