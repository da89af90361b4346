"""Manticore Search adapter — Primary engine reached over SphinxQL/HTTP."""

from bibliosearch.adapters.manticore.adapter import ConnectionState, ManticoreAdapter

__all__ = ["ConnectionState", "ManticoreAdapter"]
