"""Markdown export of a conversation."""
from datetime import datetime

from homedeck.chat.models import Thread


def export_markdown(thread: Thread) -> str:
    """Render a thread as a Markdown document."""
    created = datetime.fromtimestamp(thread.created_at / 1000)
    date = f"{created:%B} {created.day}, {created.year}"

    lines = [
        f"# {thread.title}",
        "",
        f"**Date**: {date}  ",
        f"**Messages**: {len(thread.messages)}  ",
        f"**Thread ID**: `{thread.id}`",
        "",
        "---",
        "",
    ]

    for msg in thread.messages:
        sent = datetime.fromtimestamp(msg.timestamp / 1000)
        when = f"{sent:%b} {sent.day}, {sent:%I:%M %p}"
        role = "👤 User" if msg.role == "user" else "🤖 Assistant"
        lines += [f"## {role}", f"*{when}*", "", msg.content, ""]

        if msg.role == "assistant":
            if msg.tools_used:
                lines.append(f"> 🔧 **Tools used**: {', '.join(msg.tools_used)}")
            if msg.execution_time:
                lines.append(f"> ⏱️ **Execution time**: {msg.execution_time / 1000:.2f}s")
            if msg.tools_used or msg.execution_time:
                lines.append("")

        lines += ["---", ""]

    lines += ["", "*Exported from HomeDeck*", ""]
    return "\n".join(lines)
