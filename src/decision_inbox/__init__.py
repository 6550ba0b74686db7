"""Decision Inbox: flag email that needs a reply, a decision or an action."""

__version__ = "0.1.0"
