from chat_relay.memory.events import EventEmitter
from chat_relay.memory.models import SessionRecord, TurnRecord, VariantRecord
from chat_relay.memory.session_manager import SessionManager
from chat_relay.memory.store import MemoryStore
from chat_relay.memory.variants import VariantManager, VersionAllocator

__all__ = [
    "EventEmitter",
    "MemoryStore",
    "SessionManager",
    "SessionRecord",
    "TurnRecord",
    "VariantManager",
    "VariantRecord",
    "VersionAllocator",
]
