"""
Cross-session synchronization.

Components:
- sync_models.py: SyncMessage / MessageType
- sync_bus.py: two-tier publish/subscribe (ephemeral channel + durable shadow)
- memory_transport.py: in-process hub and dict shadow
- shadow_store.py: SQLite shadow slots
- redis_transport.py: Redis pub/sub channel and key/value shadow
"""
