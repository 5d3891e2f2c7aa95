"""Duplex session channel: wire protocol and per-connection handler."""

from .protocol import parse_client_message, parse_server_message
from .session_handler import HandlerState, SessionHandler

__all__ = ["HandlerState", "SessionHandler", "parse_client_message", "parse_server_message"]
