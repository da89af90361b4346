"""Search backend layer — Interchangeable connectors behind one contract.

Built-in backends:
  - manticore: Manticore / Sphinx full-text engine over SphinxQL (primary)
  - relational: SQL store via SQLAlchemy async (fallback, source of truth)

Implement ``SearchBackend`` to connect another search backend.
"""
