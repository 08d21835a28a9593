# stadia_spider/rpc/__init__.py
"""
Client for the batchexecute RPC endpoint.

Google session cookies in, decoded response protos out.
"""

from .batch import EnvelopeError, decode_batch, encode_batch, encode_batch_form
from .client import Client, TransportError
from .session import GoogleCookies, GoogleSession, discover_sessions, login_interactively
from .throttle import Throttle

__all__ = [
    'Client',
    'TransportError',
    'EnvelopeError',
    'encode_batch',
    'encode_batch_form',
    'decode_batch',
    'Throttle',
    'GoogleCookies',
    'GoogleSession',
    'discover_sessions',
    'login_interactively',
]
