"""
CRM ingestion pipeline.

Accepts customer and order payloads over HTTP, publishes them to a queue,
and drains the queue into PostgreSQL with size- or time-bounded bulk writes.
"""

__version__ = "1.0.0"
