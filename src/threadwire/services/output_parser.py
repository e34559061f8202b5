"""Terminal output parsing

Pure helpers shared by the process wrapper and the stream dispatcher:
- Control sequence stripping for pty output
- Confirmation prompt detection
- Splitting long text into deliverable pieces
"""
import re
from typing import List, Optional


# CSI and other ANSI escapes (colors, cursor movement, modes)
ANSI_PATTERN = re.compile(
    r"[\x1b\x9b][\[\]()#;?]*"
    r"(?:"
    r"(?:(?:(?:;[-a-zA-Z\d/#&.:=?%@~_]+)*|[a-zA-Z\d]+(?:;[-a-zA-Z\d/#&.:=?%@~_]*)*)?\x07)"
    r"|(?:(?:\d{1,4}(?:;\d{0,4})*)?[\dA-PR-TZcf-nq-uy=><~])"
    r")"
)
# Operating System Commands, terminated by BEL or ST
OSC_PATTERN = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
# Device Control Strings
DCS_PATTERN = re.compile(r"\x1bP[^\x1b]*\x1b\\")
LONE_CR_PATTERN = re.compile(r"\r(?!\n)")
NEWLINE_RUN_PATTERN = re.compile(r"\n{3,}")

PROMPT_PATTERNS = [
    re.compile(r"Allow\s+\w+\s+tool", re.IGNORECASE),
    re.compile(r"\[y/n\]", re.IGNORECASE),
    re.compile(r"Press\s+y\s+to\s+allow", re.IGNORECASE),
    re.compile(r"Do you want to proceed", re.IGNORECASE),
]

TOOL_NAME_PATTERN = re.compile(r"(?:Using|Allow)\s+(\w+)\s+tool", re.IGNORECASE)

SPINNER_CHARS = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏", "◐", "◓", "◑", "◒")

CODE_INDICATORS = [
    re.compile(r"^import\s", re.MULTILINE),
    re.compile(r"^export\s", re.MULTILINE),
    re.compile(r"^class\s", re.MULTILINE),
    re.compile(r"^def\s", re.MULTILINE),
    re.compile(r"^function\s", re.MULTILINE),
    re.compile(r"^\s*\{", re.MULTILINE),
    re.compile(r"^\s*\[", re.MULTILINE),
]

DEFAULT_CHUNK_SIZE = 3900


def _clean_once(text: str) -> str:
    cleaned = OSC_PATTERN.sub("", text)
    cleaned = DCS_PATTERN.sub("", cleaned)
    cleaned = ANSI_PATTERN.sub("", cleaned)
    cleaned = cleaned.replace("\r\n", "\n")
    cleaned = LONE_CR_PATTERN.sub("", cleaned)
    cleaned = cleaned.replace("\x00", "")
    cleaned = NEWLINE_RUN_PATTERN.sub("\n\n", cleaned)
    return cleaned.strip()


def strip_control_sequences(text: str) -> str:
    """Remove terminal control sequences and normalize whitespace.

    Removing one sequence can splice its neighbours into a new one, so the
    cleaning pass repeats until the text stops changing. Every pass that
    changes the text shortens it, which bounds the loop and makes the
    function idempotent.
    """
    previous = None
    while text != previous:
        previous = text
        text = _clean_once(text)
    return text


def detect_prompt(text: str) -> bool:
    """True if ``text`` contains an interactive yes/no confirmation"""
    return any(pattern.search(text) for pattern in PROMPT_PATTERNS)


def detect_processing(text: str) -> bool:
    """True if ``text`` shows a spinner, i.e. work is still in progress"""
    return any(char in text for char in SPINNER_CHARS)


def extract_tool_name(text: str) -> Optional[str]:
    """Tool named by a tool-use prompt, if any"""
    match = TOOL_NAME_PATTERN.search(text)
    return match.group(1) if match else None


def format_for_display(text: str) -> str:
    """Clean ``text`` and fence it when it looks like source code"""
    formatted = strip_control_sequences(text)

    if "```" in formatted or "function" in formatted or "const " in formatted:
        return formatted

    if any(pattern.search(formatted) for pattern in CODE_INDICATORS):
        formatted = f"```\n{formatted}\n```"

    return formatted


def _find_break(text: str, max_len: int) -> int:
    paragraph = text.rfind("\n\n", 0, max_len + 2)
    if paragraph >= max_len * 0.5:
        return paragraph

    line = text.rfind("\n", 0, max_len + 1)
    if line >= max_len * 0.3:
        return line

    space = text.rfind(" ", 0, max_len + 1)
    if space >= max_len * 0.3:
        return space

    return max_len


def chunk(text: str, max_len: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    """Split ``text`` into pieces of at most ``max_len`` characters.

    Breaks prefer, in order: a blank line in the second half of the window,
    a newline past 30% of it, a space past 30% of it, and finally a hard cut
    at ``max_len``. Each continuation piece has its leading whitespace
    removed; nothing else is dropped.

    Args:
        text: Text to split
        max_len: Maximum piece length

    Returns:
        List[str]: Pieces in their original order
    """
    if max_len <= 0:
        raise ValueError("max_len must be positive")

    if len(text) <= max_len:
        return [text]

    pieces: List[str] = []
    remaining = text

    while remaining:
        if len(remaining) <= max_len:
            pieces.append(remaining)
            break

        break_point = _find_break(remaining, max_len)
        pieces.append(remaining[:break_point])
        remaining = remaining[break_point:].lstrip()

    return pieces
