"""
Account Manager Module

Connects mailbox accounts through OAuth (Gmail authorization code, Outlook
device code) and disconnects them.
"""
from .manager import (
    AccountManager, DeviceFlowCompleted, DeviceFlowPending, DeviceFlowStart, PendingAuthorization,
)

__all__ = [
    'AccountManager',
    'DeviceFlowCompleted',
    'DeviceFlowPending',
    'DeviceFlowStart',
    'PendingAuthorization',
]
