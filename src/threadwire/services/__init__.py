"""Threadwire services"""

from .dispatch_router import DispatchRouter
from .output_parser import chunk, detect_prompt, strip_control_sequences
from .process_wrapper import ProcessWrapper
from .session_manager import SessionManager
from .stream_dispatcher import StreamDispatcher

__all__ = [
    "DispatchRouter",
    "ProcessWrapper",
    "SessionManager",
    "StreamDispatcher",
    "chunk",
    "detect_prompt",
    "strip_control_sequences",
]
