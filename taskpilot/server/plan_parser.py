"""
SOLE RESPONSIBILITY: Turn a model-produced plan into ordered (title, description) pairs,
and pull runnable shell blocks out of sub-task replies.
"""

import re
from typing import List, Optional, Tuple

PLAN_ITEM = re.compile(r"^\d+\.\s(.+)$")
SHELL_BLOCK = re.compile(r"```(?:bash|sh|shell|powershell|cmd)[ \t]*\r?\n(.*?)```", re.DOTALL | re.IGNORECASE)


def parse_plan(text: str) -> List[Tuple[str, Optional[str]]]:
    """
    Every line of the form "N. title" starts a sub-task; the non-empty lines that
    follow, stripped, form its description. Text before the first item is ignored,
    and an item whose title is blank is skipped together with its description lines.
    """
    items: List[Tuple[str, Optional[str]]] = []
    title: Optional[str] = None
    description: List[str] = []

    def flush():
        if title:
            items.append((title, "\n".join(description) or None))

    for line in text.splitlines():
        match = PLAN_ITEM.match(line)
        if match:
            flush()
            title = match.group(1).strip()
            description = []
        elif title and line.strip():
            description.append(line.strip())

    flush()
    return items


def extract_shell_commands(text: str) -> List[str]:
    """Non-empty, non-comment lines of fenced bash/sh/shell/powershell/cmd blocks, in order."""
    commands = []
    for block in SHELL_BLOCK.findall(text):
        for line in block.splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                commands.append(line)
    return commands
