"""Wire-level helpers: line framing and the Lua command codec."""

from .codec import ChannelDelta, ProtocolCodec
from .framers import LineFramer

__all__ = ["ChannelDelta", "LineFramer", "ProtocolCodec"]
