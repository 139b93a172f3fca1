"""
Prompt Building
===============

Prompts handed to agents and the ``## Project Path`` convention used
to carry a working directory inside a card description.
"""

from typing import Optional

PROJECT_PATH_HEADINGS = ("## Project Path", "## 프로젝트 경로")

# How many lines below the heading are searched for the path.
PROJECT_PATH_LOOKAHEAD = 5


def extract_project_path(description: Optional[str]) -> Optional[str]:
    """
    Find the working directory declared in a description.

    Example description::

        Fix the login redirect.

        ## Project Path
        /home/me/repos/webapp

    The first non-empty line within five lines of the heading is taken
    as is, unless another ``## `` section starts first.
    """
    if not description:
        return None

    lines = description.splitlines()
    for i, line in enumerate(lines):
        if line.strip() not in PROJECT_PATH_HEADINGS:
            continue
        for candidate in lines[i + 1:i + 1 + PROJECT_PATH_LOOKAHEAD]:
            value = candidate.strip()
            if not value:
                continue
            if value.startswith("## "):
                break
            return value
    return None


def build_run_prompt(title: str, description: Optional[str]) -> str:
    return f"{title}\n\n{description or ''}"


def build_review_prompt(
    title: str,
    description: Optional[str],
    impl_log_path: Optional[str] = None,
    sentinel: str = "REVIEW_PASSED",
) -> str:
    """Verification prompt for the reviewer agent."""
    log_hint = f"\n\nImplementation log available at: {impl_log_path}" if impl_log_path else ""
    return (
        f"Task Verification for: {title}\n"
        f"\n"
        f"Task Description: {description or '(no description)'}\n"
        f"{log_hint}\n"
        f"\n"
        f"Please verify the task was completed successfully:\n"
        f"1. Check if the requested work was done\n"
        f"2. If code changes were made, review for bugs and issues\n"
        f"3. Verify the result matches the task requirements\n"
        f"\n"
        f"IMPORTANT: If the task appears completed successfully, output exactly: {sentinel}\n"
        f"If there are issues or the task is incomplete, explain clearly."
    )
