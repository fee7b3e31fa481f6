"""
Shared API dependencies
"""

from typing import Optional
from fastapi import Header

from ..treasury import TreasurySystem


_treasury_system: Optional[TreasurySystem] = None


def get_treasury_system() -> TreasurySystem:
    """Process-wide treasury system, built on first use from configuration"""
    global _treasury_system
    if _treasury_system is None:
        _treasury_system = TreasurySystem()
    return _treasury_system


def set_treasury_system(system: Optional[TreasurySystem]) -> None:
    global _treasury_system
    _treasury_system = system


def get_actor(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """Acting user as forwarded by the gateway; authentication happens upstream"""
    return x_user_id


def get_idempotency_key(idempotency_key: Optional[str] = Header(None)) -> Optional[str]:
    """Client key that makes a check action safe to retry"""
    return idempotency_key
