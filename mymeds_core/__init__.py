# =============================================================================
# mymeds_core/__init__.py
# MyMeds Offline-First Data Layer
# =============================================================================
"""
Offline-first data access for the MyMeds medication client.

Packages:
- offline: cache, fetch coordination, drafts, mutations, replay
- domain: prescriptions and reminders collections
- remote: repository contract and the Supabase adapter
- errors / logging / services: shared infrastructure
"""

__version__ = "0.1.0"
