"""
Device identity and enrollment record.
"""
from .identity_manager import IdentityManager, AgentRegistration, is_well_formed_device_id

__all__ = [
    'IdentityManager',
    'AgentRegistration',
    'is_well_formed_device_id'
]
