"""Intent routing over the leaf states of a resolved tree."""

from .intent import IntentRouter, IntentSelection, RouterReply

__all__ = ["IntentRouter", "IntentSelection", "RouterReply"]
