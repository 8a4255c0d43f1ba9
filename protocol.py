# FILE: protocol.py
"""
protocol.py — Reserved lines of the roomchat wire protocol.

Shared by server and client; both sides must stay in sync.
"""

# Server → client
USERNAME_PROMPT        = "Enter username:"
READY_TO_RECEIVE_FILE  = "READY_TO_RECEIVE_FILE"    # client sends name, size, bytes
SENDING_FILE           = "SENDING_FILE"             # server sends name, size, bytes
READY_TO_RECEIVE_VOICE = "READY_TO_RECEIVE_VOICE"   # client sends duration ms, size, bytes
SENDING_VOICE          = "SENDING_VOICE"            # server sends size, bytes
ERROR_PREFIX           = "ERROR:"

# Client → server, in place of the first metadata line
FILE_TRANSFER_CANCELLED  = "FILE_TRANSFER_CANCELLED"
VOICE_TRANSFER_CANCELLED = "VOICE_TRANSFER_CANCELLED"

# Upload progress is reported every time the percentage climbs this much
PROGRESS_STEP = 10

HELP_LINES = (
    "Available commands:",
    "/join [RoomName] - Join a room",
    "/create [RoomName] - Create a new room",
    "/rooms - List available rooms",
    "/exit - Leave current room",
    "/members - List members in current room",
    "/whisper [Username] [Message] - Send private message",
    "/sendfile - Upload and share a file",
    "/getfile [FileName] - Download a shared file",
    "/listfiles - List all available files",
    "/sendvoice - Send a voice message",
    "/getvoice [VoiceID] - Download a voice message",
    "/listvoices - List all available voice messages",
    "/help - Show this help menu",
)
