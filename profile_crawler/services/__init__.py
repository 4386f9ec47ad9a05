"""
Session state and checkpoint services.
"""

from .session_state import SessionState
from .checkpoint import Checkpoint, CheckpointStore

__all__ = [
    'SessionState',
    'Checkpoint',
    'CheckpointStore'
]
