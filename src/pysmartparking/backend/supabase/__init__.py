"""Supabase backend."""

from .api import SupabaseStore
from .auth import SupabaseAuth
from .realtime import RealtimeClient

__all__ = ["RealtimeClient", "SupabaseAuth", "SupabaseStore"]
