"""Parley - conversational agent runtime for group chats."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("parley-agent")
except PackageNotFoundError:
    __version__ = "0.3.0"

__logo__ = "💬"
__brand__ = "parley"
