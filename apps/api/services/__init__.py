"""
Services package for PharmaFlow API
Contains the pharmacy core: inventory ledger, prescription and bill state
machines, alert evaluator and notification dispatcher
"""

from .websocket_manager import ws_manager, WebSocketMessage, MessageType

__all__ = [
    'ws_manager',
    'WebSocketMessage',
    'MessageType',
]
