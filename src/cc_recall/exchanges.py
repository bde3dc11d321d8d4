"""Group transcript messages into exchanges."""

from cc_recall.models import Exchange, Message


def create_exchanges(messages: list[Message], session_id: str) -> list[Exchange]:
    """Create exchanges from a list of messages.

    An exchange starts at a user message carrying text and runs until the next
    one, collecting the assistant replies in between. Empty messages (tool
    calls and results) only extend the line range. Assistant text before the
    first user message forms an exchange of its own.
    """
    exchanges: list[Exchange] = []
    parts: list[str] = []
    line_start = line_end = 0

    def flush() -> None:
        if parts:
            exchanges.append(
                Exchange(
                    session_id=session_id,
                    ordinal=len(exchanges),
                    line_start=line_start,
                    line_end=line_end,
                    text="\n\n".join(parts),
                )
            )

    for msg in messages:
        if msg.role == "user" and msg.content:
            flush()
            parts = [f"User: {msg.content}"]
            line_start = line_end = msg.line
            continue

        if not parts and not msg.content:
            continue

        if not parts:
            # Orphan assistant message (no preceding user message)
            line_start = msg.line
        if msg.content:
            prefix = "User" if msg.role == "user" else "Assistant"
            parts.append(f"{prefix}: {msg.content}")
        line_end = msg.line

    flush()
    return exchanges
