from .chat import chat_command
from .chats import chats_group
from .info import config_command, models_command, providers_command, version_command

__all__ = [
    "chat_command",
    "chats_group",
    "models_command",
    "providers_command",
    "config_command",
    "version_command",
]
