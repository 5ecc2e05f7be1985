import datetime
from dataclasses import dataclass, field

SERVER_PREFIX = "[SERVER]"
UNKNOWN_USER = "Unknown User"


# One entry of a client's receive log.
@dataclass
class Message:
    content: str
    time_sent: datetime.datetime = field(default_factory=datetime.datetime.now)

    def __str__(self) -> str:
        return f"[{self.time_sent:%H:%M:%S}] - {self.content}"


def server_message(text: str) -> str:
    ''' Mark text as originating from the host rather than a user '''
    return f"{SERVER_PREFIX} {text}"


def user_message(username: str, text: str) -> str:
    return f"{username}: {text}"


def directed_message(sender: str, recipient: str, text: str) -> str:
    return f"[From {sender}, To {recipient}] {text}"


def join_announcement(username: str) -> str:
    return server_message(f'User "{username}" has joined the server!')


def leave_announcement(username: str) -> str:
    return server_message(f'User "{username}" has left the server!')


def duplicate_username_notice(username: str) -> str:
    return server_message(f'Username "{username}" is already taken!')
