"""
CRM synchronization service.

Keeps the local user/organization/location store in step with an external
CRM tenant. See ``crm_sync.sync`` for the engine and ``crm_sync.models`` for
the persistence layer.
"""
