from relance.channels.base import ChannelDispatcher, ChannelSender, DispatchError, Recipient

__all__ = ["ChannelDispatcher", "ChannelSender", "DispatchError", "Recipient"]
