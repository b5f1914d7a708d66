from conversational_engine.streaming.reassembler import (
    REASONING_CLOSE,
    REASONING_OPEN,
    ChatRecord,
    Fragment,
    FragmentKind,
    StreamReassembler,
    StreamState,
    reassemble,
)

__all__ = [
    "REASONING_CLOSE",
    "REASONING_OPEN",
    "ChatRecord",
    "Fragment",
    "FragmentKind",
    "StreamReassembler",
    "StreamState",
    "reassemble",
]
