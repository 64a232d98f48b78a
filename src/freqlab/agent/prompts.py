"""Prompt composition for agent turns."""

from typing import List, Optional

from ..models.chat_models import Attachment

FIX_BUILD_TEMPLATE = """The last build of this project failed. Fix the code so that it builds.

Build errors:
```
{excerpt}
```

Make the smallest change that resolves these errors and keep existing behaviour intact."""

FIX_BUILD_NO_EXCERPT = (
    "The last build of this project failed without a recognizable compiler "
    "error. Inspect the build configuration and fix whatever prevents it from "
    "producing the plugin bundle."
)


def build_attachment_context(attachments: List[Attachment]) -> str:
    """
    Describe attached files to the agent, one line per file.

    Args:
        attachments: Files attached to the user message

    Returns:
        Context block, empty when there are no attachments
    """
    return "\n".join(
        f"[Attached file: {attachment.original_name} at {attachment.path}]"
        for attachment in attachments
    )


def compose_prompt(prompt: str, attachments: Optional[List[Attachment]] = None) -> str:
    """
    Prefix the user prompt with attachment context.

    Args:
        prompt: User message
        attachments: Files attached to the message

    Returns:
        Prompt sent to the agent
    """
    context = build_attachment_context(attachments or [])
    if not context:
        return prompt
    return f"{context}\n\n{prompt}"


def build_fix_prompt(error_excerpt: Optional[str]) -> str:
    """
    Render the follow-up request asking the agent to fix a failed build.

    Args:
        error_excerpt: Excerpt extracted from the failed build log

    Returns:
        Prompt text
    """
    if not error_excerpt or not error_excerpt.strip():
        return FIX_BUILD_NO_EXCERPT
    return FIX_BUILD_TEMPLATE.format(excerpt=error_excerpt.strip())
