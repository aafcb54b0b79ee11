"""
Sample model replies and command lines for testing.
"""

import sys
from typing import List

__all__ = ["SampleDataGenerator", "PYTHON", "TEST_MODEL"]

# Interpreter running the tests, quoted for the sandbox command-line parser
PYTHON = f'"{sys.executable}"'

TEST_MODEL = "test-model"


class SampleDataGenerator:
    """Builds realistic model output."""

    @staticmethod
    def plan(titles: List[str], with_descriptions: bool = True) -> str:
        lines = ["Here is the plan to complete the task:", ""]
        for index, title in enumerate(titles, start=1):
            lines.append(f"{index}. {title}")
            if with_descriptions:
                lines.append(f"   Details for {title.lower()}.")
                lines.append("")
        lines.append("Let me know if you want to adjust anything.")
        return "\n".join(lines)

    @staticmethod
    def python_command(code: str) -> str:
        """A sandbox command line running `code` with the test interpreter."""
        return f'{PYTHON} -c "{code}"'

    @staticmethod
    def reply_with_shell_block(*command_lines: str, language: str = "bash") -> str:
        body = "\n".join(command_lines)
        return f"I will run the following commands:\n\n```{language}\n{body}\n```\n\nThat completes the step."
