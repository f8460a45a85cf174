"""Adapters - storage backends for the audit changelog.

Contains:
- memory_store.py   - In-memory partitioned changelog store
- memory_queue.py   - In-memory capture queue with lease claims
- memory.py         - In-memory exclusions, alerts and unit of work
- primary_store.py  - In-memory primary store with capture
- archive.py        - Cold-namespace archive sinks
- repositories.py   - SQLAlchemy repositories for PostgreSQL
- database.py       - Engine, schema bootstrap and SqlAuditBackend
"""

__all__: list[str] = []
